"""
Per-chunk pipeline output models.

DraftSegment holds the accepted transcription of a chunk and PolishedSegment
the refined version of that draft. Both are 1:1 with their parent so that
re-attempts always overwrite the same slot.
"""

import json
from datetime import datetime
from chunkscribe.database import db


class DraftSegment(db.Model):
    """Raw transcription of one non-silence chunk."""

    __tablename__ = 'draft_segment'

    id = db.Column(db.Integer, primary_key=True)
    chunk_id = db.Column(db.Integer, db.ForeignKey('audio_chunk.id'), nullable=False, unique=True)
    raw_text = db.Column(db.Text, nullable=False, default='')

    # PENDING, VERIFIED, SUSPICIOUS_RESOLVED, FAILED
    validation_status = db.Column(db.String(30), default='PENDING', nullable=False)
    retry_attempt = db.Column(db.Integer, default=0, nullable=False)

    # Accepted but excluded from refinement and merge (short noise, advisor SKIP)
    discarded = db.Column(db.Boolean, default=False, nullable=False)

    quality_score = db.Column(db.Float, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    polished = db.relationship(
        'PolishedSegment',
        backref='draft',
        uselist=False,
        cascade='all, delete-orphan'
    )

    def __repr__(self):
        return f'<DraftSegment chunk={self.chunk_id} status={self.validation_status}>'

    @property
    def is_usable(self):
        """Whether this draft feeds refinement, context and merge."""
        return self.validation_status in ('VERIFIED', 'SUSPICIOUS_RESOLVED') and not self.discarded

    def to_dict(self):
        return {
            'id': self.id,
            'chunk_id': self.chunk_id,
            'raw_text': self.raw_text,
            'validation_status': self.validation_status,
            'retry_attempt': self.retry_attempt,
            'discarded': self.discarded,
            'quality_score': self.quality_score,
            'error_message': self.error_message,
            'polished': self.polished.to_dict() if self.polished else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class PolishedSegment(db.Model):
    """Refined text for one draft."""

    __tablename__ = 'polished_segment'

    id = db.Column(db.Integer, primary_key=True)
    draft_id = db.Column(db.Integer, db.ForeignKey('draft_segment.id'), nullable=False, unique=True)
    polished_text = db.Column(db.Text, nullable=False, default='')
    has_repetition = db.Column(db.Boolean, default=False, nullable=False)
    warnings = db.Column(db.Text, nullable=True)  # JSON list of strings

    # APPROVED, NEEDS_REVIEW
    review_status = db.Column(db.String(20), default='APPROVED', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def get_warnings(self):
        if not self.warnings:
            return []
        try:
            return json.loads(self.warnings)
        except (json.JSONDecodeError, TypeError):
            return []

    def set_warnings(self, warnings):
        self.warnings = json.dumps(list(warnings)) if warnings else None

    def to_dict(self):
        return {
            'id': self.id,
            'draft_id': self.draft_id,
            'polished_text': self.polished_text,
            'has_repetition': self.has_repetition,
            'warnings': self.get_warnings(),
            'review_status': self.review_status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
