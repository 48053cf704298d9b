"""
Alignment Store Models

SQLAlchemy tables backing the alignment store, plus the plain value objects
handed to the rest of the engine.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from .state_machine import DistillationState

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignatureRow(Base):
    """
    One patched function, keyed by fingerprint.

    Holds the canonical signature and the distillation state, which is only
    ever changed through compare-and-set updates.
    """

    __tablename__ = "signatures"

    fingerprint = Column(String(64), primary_key=True)
    name = Column(String, nullable=False, index=True)
    signature_json = Column(Text, nullable=False)

    state = Column(
        Enum(DistillationState, values_callable=lambda e: [m.value for m in e]),
        default=DistillationState.COLD,
        nullable=False,
    )
    student_model = Column(String, nullable=True)  # Fine-tuned model id once distilled
    job_id = Column(String, nullable=True)  # In-flight or last fine-tuning job
    records_at_last_attempt = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "name": self.name,
            "state": self.state.value if self.state else None,
            "student_model": self.student_model,
            "job_id": self.job_id,
            "records_at_last_attempt": self.records_at_last_attempt,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class AlignmentExampleRow(Base):
    """Declared (input → expected output) assertion, replaced as a set."""

    __tablename__ = "alignment_examples"

    __table_args__ = (
        UniqueConstraint("fingerprint", "position", name="unique_example_position"),
        Index("idx_example_fingerprint", "fingerprint"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), nullable=False)
    position = Column(Integer, nullable=False)
    inputs = Column(JSON, nullable=False)
    expected = Column(JSON, nullable=True)
    partial = Column(Boolean, default=False, nullable=False)
    description = Column(String, nullable=True)


class TrainingRecordRow(Base):
    """Validated production call. Append-only."""

    __tablename__ = "training_records"

    __table_args__ = (
        Index("idx_record_fingerprint", "fingerprint"),
        Index("idx_record_fingerprint_created", "fingerprint", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), nullable=False)
    inputs = Column(JSON, nullable=False)
    output = Column(JSON, nullable=True)
    model = Column(String, nullable=False)
    role = Column(String, nullable=False)  # teacher / student
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class InvocationFailureRow(Base):
    """A call whose output never validated. Not training data."""

    __tablename__ = "invocation_failures"

    __table_args__ = (Index("idx_failure_fingerprint", "fingerprint"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    fingerprint = Column(String(64), nullable=False)
    model = Column(String, nullable=False)
    role = Column(String, nullable=False)
    raw_output = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


@dataclass(frozen=True)
class AlignmentExample:
    """
    One alignment assertion.

    ``inputs`` maps parameter names to JSON-compatible values and ``expected``
    is the JSON-compatible expected output. A partial example only constrains
    the record fields it names.
    """

    inputs: Dict[str, Any]
    expected: Any
    position: int = 0
    partial: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class TrainingRecord:
    """One validated production call, used as distillation fuel."""

    inputs: Dict[str, Any]
    output: Any
    model: str
    role: str
    created_at: datetime = field(default_factory=_utcnow)
