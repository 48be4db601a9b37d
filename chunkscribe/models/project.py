"""
Project and audio chunk models.

A Project owns an ordered, immutable list of AudioChunks produced once by the
external splitter. The checkpoint column is the only pipeline state that the
scheduler persists at project level.
"""

import json
from datetime import datetime
from chunkscribe.database import db


class Project(db.Model):
    """A recording being turned into a polished transcript."""

    __tablename__ = 'project'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    # AUTOMATED runs are driven by the pipeline; SUPERVISED projects only get manual chunk ops
    mode = db.Column(db.String(20), default='SUPERVISED', nullable=False)

    # Current checkpoint plus the last forward checkpoint (for resuming from PAUSED)
    checkpoint = db.Column(db.String(30), default='UPLOADED', nullable=False, index=True)
    last_checkpoint = db.Column(db.String(30), nullable=True)

    # JSON blob: mode, tone, cleaning_rules, custom_instructions, template_id
    style_config = db.Column(db.Text, nullable=True)

    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    chunks = db.relationship(
        'AudioChunk',
        backref='project',
        order_by='AudioChunk.index',
        cascade='all, delete-orphan',
        lazy=True
    )
    final_document = db.relationship(
        'FinalDocument',
        backref='project',
        uselist=False,
        cascade='all, delete-orphan'
    )

    def __repr__(self):
        return f'<Project {self.id} checkpoint={self.checkpoint}>'

    def get_style_config(self):
        if not self.style_config:
            return {}
        try:
            return json.loads(self.style_config)
        except (json.JSONDecodeError, TypeError):
            return {}

    def set_style_config(self, config):
        self.style_config = json.dumps(config) if config else None

    @property
    def speech_chunks(self):
        """Non-silence chunks in index order."""
        return [chunk for chunk in self.chunks if not chunk.is_silence]

    def progress(self):
        """Percentage of non-silence chunks that reached a terminal per-chunk state."""
        speech = self.speech_chunks
        if not speech:
            return 100 if self.checkpoint == 'COMPLETE' else 0
        done = sum(1 for chunk in speech if chunk.is_finished())
        return round(done * 100 / len(speech))

    def to_dict(self, include_chunks=False):
        data = {
            'id': self.id,
            'name': self.name,
            'mode': self.mode,
            'checkpoint': self.checkpoint,
            'last_checkpoint': self.last_checkpoint,
            'style_config': self.get_style_config(),
            'error_message': self.error_message,
            'progress': self.progress(),
            'chunk_count': len(self.chunks),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_chunks:
            data['chunks'] = [chunk.to_dict() for chunk in self.chunks]
        return data


class AudioChunk(db.Model):
    """One ordered, time-bounded slice of the source audio."""

    __tablename__ = 'audio_chunk'
    __table_args__ = (
        db.UniqueConstraint('project_id', 'index', name='uq_audio_chunk_project_index'),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False, index=True)
    index = db.Column(db.Integer, nullable=False)
    file_path = db.Column(db.String(500), nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)
    is_silence = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    draft = db.relationship(
        'DraftSegment',
        backref='chunk',
        uselist=False,
        cascade='all, delete-orphan'
    )

    def __repr__(self):
        return f'<AudioChunk {self.id} project={self.project_id} index={self.index}>'

    def is_finished(self):
        """True once nothing else will happen to this chunk automatically."""
        if self.is_silence:
            return True
        draft = self.draft
        if draft is None:
            return False
        if draft.validation_status == 'FAILED' or draft.discarded:
            return True
        return draft.polished is not None

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'index': self.index,
            'file_path': self.file_path,
            'duration_ms': self.duration_ms,
            'is_silence': self.is_silence,
            'draft': self.draft.to_dict() if self.draft else None,
        }


class FinalDocument(db.Model):
    """Merged output of a project."""

    __tablename__ = 'final_document'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False, unique=True)
    content = db.Column(db.Text, nullable=False, default='')
    file_path = db.Column(db.String(500), nullable=True)
    chunk_count = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'content': self.content,
            'file_path': self.file_path,
            'chunk_count': self.chunk_count,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
