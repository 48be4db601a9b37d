"""
Service layer for business logic.
"""

from .llm import is_gpt5_model, call_llm_completion, completion_text
from .quality_gate import calculate_badness, clean_text, evaluate
from .advisor import Advice, consult_on_issue
from .refinement import RefineResult, RefinementError, refine_chunk
from .chunk_store import ChunkSpec, create_project, read_chunk_bytes

__all__ = [
    # LLM services
    'is_gpt5_model',
    'call_llm_completion',
    'completion_text',
    # Quality gate
    'calculate_badness',
    'clean_text',
    'evaluate',
    # Escalation advisor
    'Advice',
    'consult_on_issue',
    # Refinement
    'RefineResult',
    'RefinementError',
    'refine_chunk',
    # Chunk ingestion
    'ChunkSpec',
    'create_project',
    'read_chunk_bytes',
]
