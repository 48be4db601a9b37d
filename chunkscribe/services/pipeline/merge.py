"""
Merge accepted per-chunk outputs into the final document.
"""

import os
import logging

from chunkscribe.database import db

logger = logging.getLogger(__name__)

SEPARATOR = '\n\n'


def chunk_output(chunk):
    """
    Text a chunk contributes to the merged document, or None when excluded.

    Silence, discarded and failed chunks contribute nothing. A usable draft
    without a PolishedSegment contributes its raw text.
    """
    if chunk.is_silence or chunk.draft is None or not chunk.draft.is_usable:
        return None
    polished = chunk.draft.polished
    text = polished.polished_text if polished is not None else chunk.draft.raw_text
    text = (text or '').strip()
    return text or None


def collect_chunk_outputs(project):
    """Per-chunk raw/polished view used by the merged-document API."""
    outputs = []
    for chunk in project.chunks:
        draft = chunk.draft
        polished = draft.polished if draft else None
        outputs.append({
            'chunkId': chunk.id,
            'index': chunk.index,
            'isSilence': chunk.is_silence,
            'rawText': draft.raw_text if draft else None,
            'polishedText': polished.polished_text if polished else None,
            'validationStatus': draft.validation_status if draft else None,
            'reviewStatus': polished.review_status if polished else None,
            'warnings': polished.get_warnings() if polished else [],
            'included': chunk_output(chunk) is not None,
        })
    return outputs


def build_merged_text(project):
    parts = [text for text in (chunk_output(chunk) for chunk in project.chunks) if text]
    return SEPARATOR.join(parts), len(parts)


def merge_project(project, output_folder=None):
    """Upsert the project's FinalDocument and write it to <output_folder>/<project_id>/merged.md."""
    from chunkscribe.models import FinalDocument

    content, chunk_count = build_merged_text(project)

    file_path = None
    if output_folder:
        project_dir = os.path.join(output_folder, str(project.id))
        os.makedirs(project_dir, exist_ok=True)
        file_path = os.path.join(project_dir, 'merged.md')
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(content)

    document = project.final_document
    if document is None:
        document = FinalDocument(project_id=project.id)
        db.session.add(document)
        project.final_document = document
    document.content = content
    document.file_path = file_path
    document.chunk_count = chunk_count
    db.session.commit()

    logger.info(f"Project {project.id}: merged {chunk_count} chunks into final document")
    return document
