"""
Alignment Store

Durable per-signature storage for:
- the alignment example set (replaced wholesale on every declaration)
- the append-only training record log
- invocation failures (outputs that never validated)
- the distillation state, updated with compare-and-set semantics

The store is an explicit handle: open it once per process, close it on
shutdown.

Usage:
    store = AlignmentStore("sqlite:///./data/alignfn.db")
    store.open()
    store.register_signature(signature)
    store.declare_alignment(signature, examples)
    store.close()

Every database failure surfaces as StorageError; deciding whether to fail
open or closed is up to the caller.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from sqlalchemy import create_engine, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config.config_manager import ConfigManager
from ..errors import SignatureMismatchError, StorageError
from ..signature import FunctionSignature
from ..utils.logger import get_logger
from .models import (
    AlignmentExample,
    AlignmentExampleRow,
    Base,
    InvocationFailureRow,
    SignatureRow,
    TrainingRecord,
    TrainingRecordRow,
)
from .state_machine import DistillationState, DistillationStateMachine

logger = get_logger(__name__)

SignatureRef = Union[FunctionSignature, str]

# Columns a state transition may update alongside the state itself
_TRANSITION_FIELDS = ("student_model", "job_id", "records_at_last_attempt")


def _fingerprint_of(ref: SignatureRef) -> str:
    return ref.fingerprint if isinstance(ref, FunctionSignature) else ref


class AlignmentStore:
    """SQLAlchemy-backed alignment store keyed by signature fingerprint."""

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        """
        Initialize the store (does not connect until open()).

        Args:
            database_url: SQLAlchemy URL (defaults to DATABASE_URL config)
            echo: Log emitted SQL
        """
        self.database_url = database_url or ConfigManager.get("DATABASE_URL")
        self.echo = echo
        self._engine = None
        self._session_factory: Optional[sessionmaker] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "AlignmentStore":
        """Connect and create tables if needed."""
        if self._engine is not None:
            return self

        try:
            if self.database_url.startswith("sqlite"):
                self._ensure_sqlite_dir()
                self._engine = create_engine(
                    self.database_url,
                    connect_args={"check_same_thread": False},
                    echo=self.echo,
                )
            else:
                self._engine = create_engine(self.database_url, echo=self.echo, pool_pre_ping=True)

            Base.metadata.create_all(bind=self._engine)
            self._session_factory = sessionmaker(
                autocommit=False, autoflush=False, bind=self._engine, expire_on_commit=False
            )
        except SQLAlchemyError as e:
            self._engine = None
            raise StorageError(f"Failed to open alignment store: {e}", original_error=e)

        logger.info(f"Alignment store opened at {self._safe_url()}")
        return self

    def close(self) -> None:
        """Release all connections."""
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Alignment store closed")
        self._engine = None
        self._session_factory = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def __enter__(self) -> "AlignmentStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_sqlite_dir(self) -> None:
        if "///" not in self.database_url:
            return
        path = self.database_url.split("///", 1)[-1]
        if path and path != ":memory:":
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)

    def _safe_url(self) -> str:
        return self._engine.url.render_as_string(hide_password=True) if self._engine else self.database_url

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        if self._session_factory is None:
            raise StorageError(f"{operation}: alignment store is not open")

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"{operation} failed: {e}", original_error=e)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Signatures and state
    # ------------------------------------------------------------------

    def register_signature(self, signature: FunctionSignature) -> DistillationState:
        """
        Ensure a state row exists for the signature.

        Returns:
            The current distillation state (COLD for a new signature)

        Raises:
            SignatureMismatchError: If the stored signature for this
                fingerprint differs from the declared one
        """
        with self._session("register_signature") as session:
            row = self._get_or_create_row(session, signature)
            return row.state

    def _get_or_create_row(self, session: Session, signature: FunctionSignature) -> SignatureRow:
        canonical = signature.canonical_json()
        row = session.get(SignatureRow, signature.fingerprint)

        if row is None:
            row = SignatureRow(
                fingerprint=signature.fingerprint,
                name=signature.name,
                signature_json=canonical,
                state=DistillationState.COLD,
                records_at_last_attempt=0,
            )
            session.add(row)
            session.flush()
            logger.info(f"Registered signature {signature.name} ({signature.fingerprint[:8]})")
        elif row.signature_json != canonical:
            raise SignatureMismatchError(
                f"Fingerprint {signature.fingerprint[:8]} is stored for a different signature "
                f"({row.name}); refusing to mix alignment data"
            )
        return row

    def get_state(self, ref: SignatureRef) -> DistillationState:
        """Current state; COLD for unknown signatures."""
        fingerprint = _fingerprint_of(ref)
        with self._session("get_state") as session:
            row = session.get(SignatureRow, fingerprint)
            return row.state if row else DistillationState.COLD

    def get_signature_row(self, ref: SignatureRef) -> Optional[Dict[str, Any]]:
        """State row as a dictionary, or None if never registered."""
        fingerprint = _fingerprint_of(ref)
        with self._session("get_signature_row") as session:
            row = session.get(SignatureRow, fingerprint)
            if row is None:
                return None
            data = row.to_dict()
            data["signature"] = row.signature_json
            return data

    def list_signatures(self) -> List[Dict[str, Any]]:
        """All known signatures with their state and record counts."""
        with self._session("list_signatures") as session:
            counts = dict(
                session.query(TrainingRecordRow.fingerprint, func.count(TrainingRecordRow.id))
                .group_by(TrainingRecordRow.fingerprint)
                .all()
            )
            rows = session.query(SignatureRow).order_by(SignatureRow.name).all()
            result = []
            for row in rows:
                data = row.to_dict()
                data["training_records"] = counts.get(row.fingerprint, 0)
                result.append(data)
            return result

    def compare_and_set_state(
        self,
        ref: SignatureRef,
        expected: DistillationState,
        new: DistillationState,
        **fields: Any,
    ) -> bool:
        """
        Atomically move a signature from ``expected`` to ``new``.

        The update is a single conditional UPDATE, so of several concurrent
        callers racing on the same transition exactly one wins.

        Args:
            ref: Signature or fingerprint
            expected: State the caller observed
            new: Desired state
            **fields: Extra columns to set (student_model, job_id,
                records_at_last_attempt)

        Returns:
            True if the transition was applied
        """
        DistillationStateMachine.validate_transition(expected, new)

        unknown = set(fields) - set(_TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields {sorted(unknown)} during a transition")

        fingerprint = _fingerprint_of(ref)
        values: Dict[Any, Any] = {SignatureRow.state: new, SignatureRow.updated_at: datetime.now(timezone.utc)}
        for key, value in fields.items():
            values[getattr(SignatureRow, key)] = value

        with self._session("compare_and_set_state") as session:
            updated = (
                session.query(SignatureRow)
                .filter(SignatureRow.fingerprint == fingerprint, SignatureRow.state == expected)
                .update(values, synchronize_session=False)
            )

        if updated == 1:
            logger.info(f"Signature {fingerprint[:8]}: {expected.value} → {new.value}")
            return True
        return False

    def list_jobs_in_flight(self) -> List[Tuple[str, str, str]]:
        """(fingerprint, name, job_id) for every signature training with a submitted job."""
        with self._session("list_jobs_in_flight") as session:
            rows = (
                session.query(SignatureRow.fingerprint, SignatureRow.name, SignatureRow.job_id)
                .filter(SignatureRow.state == DistillationState.TRAINING, SignatureRow.job_id.isnot(None))
                .all()
            )
            return [(fp, name, job_id) for fp, name, job_id in rows]

    def set_job_id(self, ref: SignatureRef, job_id: str) -> bool:
        """Attach a submitted job id to a signature that is still training."""
        fingerprint = _fingerprint_of(ref)
        with self._session("set_job_id") as session:
            updated = (
                session.query(SignatureRow)
                .filter(SignatureRow.fingerprint == fingerprint, SignatureRow.state == DistillationState.TRAINING)
                .update({SignatureRow.job_id: job_id}, synchronize_session=False)
            )
        return updated == 1

    # ------------------------------------------------------------------
    # Alignment examples
    # ------------------------------------------------------------------

    def declare_alignment(
        self,
        signature: FunctionSignature,
        examples: Sequence[AlignmentExample],
    ) -> DistillationState:
        """
        Replace the example set for a signature in one transaction.

        An empty sequence clears the set. A non-empty declaration moves a
        COLD signature to ALIGNED; later states are left untouched.

        Returns:
            The state after the declaration
        """
        with self._session("declare_alignment") as session:
            row = self._get_or_create_row(session, signature)

            session.query(AlignmentExampleRow).filter(
                AlignmentExampleRow.fingerprint == signature.fingerprint
            ).delete(synchronize_session=False)

            for position, example in enumerate(examples):
                session.add(
                    AlignmentExampleRow(
                        fingerprint=signature.fingerprint,
                        position=position,
                        inputs=example.inputs,
                        expected=example.expected,
                        partial=example.partial,
                        description=example.description,
                    )
                )

            if examples and row.state == DistillationState.COLD:
                session.query(SignatureRow).filter(
                    SignatureRow.fingerprint == signature.fingerprint,
                    SignatureRow.state == DistillationState.COLD,
                ).update(
                    {SignatureRow.state: DistillationState.ALIGNED,
                     SignatureRow.updated_at: datetime.now(timezone.utc)},
                    synchronize_session=False,
                )
                logger.info(f"Signature {signature.fingerprint[:8]}: cold → aligned (alignment declared)")
                state = DistillationState.ALIGNED
            else:
                state = row.state

        logger.info(f"Declared {len(examples)} alignment examples for {signature.name}")
        return state

    def get_examples(self, ref: SignatureRef) -> List[AlignmentExample]:
        """Declared examples in declaration order; empty if none."""
        fingerprint = _fingerprint_of(ref)
        with self._session("get_examples") as session:
            rows = (
                session.query(AlignmentExampleRow)
                .filter(AlignmentExampleRow.fingerprint == fingerprint)
                .order_by(AlignmentExampleRow.position)
                .all()
            )
            return [
                AlignmentExample(
                    inputs=row.inputs,
                    expected=row.expected,
                    position=row.position,
                    partial=bool(row.partial),
                    description=row.description,
                )
                for row in rows
            ]

    # ------------------------------------------------------------------
    # Training records
    # ------------------------------------------------------------------

    def append_training_record(self, ref: SignatureRef, record: TrainingRecord) -> None:
        """
        Append one validated call. Duplicates are tolerated.

        Given a FunctionSignature, its state row is created in the same
        transaction if registration never reached the store.
        """
        fingerprint = _fingerprint_of(ref)
        with self._session("append_training_record") as session:
            if isinstance(ref, FunctionSignature):
                self._get_or_create_row(session, ref)
            session.add(
                TrainingRecordRow(
                    fingerprint=fingerprint,
                    inputs=record.inputs,
                    output=record.output,
                    model=record.model,
                    role=record.role,
                    created_at=record.created_at,
                )
            )

    def count_training_records(self, ref: SignatureRef) -> int:
        fingerprint = _fingerprint_of(ref)
        with self._session("count_training_records") as session:
            return (
                session.query(func.count(TrainingRecordRow.id))
                .filter(TrainingRecordRow.fingerprint == fingerprint)
                .scalar()
            ) or 0

    def get_training_records(self, ref: SignatureRef, limit: Optional[int] = None) -> List[TrainingRecord]:
        """Training records, oldest first."""
        fingerprint = _fingerprint_of(ref)
        with self._session("get_training_records") as session:
            query = (
                session.query(TrainingRecordRow)
                .filter(TrainingRecordRow.fingerprint == fingerprint)
                .order_by(TrainingRecordRow.id)
            )
            if limit:
                query = query.limit(limit)
            return [
                TrainingRecord(
                    inputs=row.inputs,
                    output=row.output,
                    model=row.model,
                    role=row.role,
                    created_at=row.created_at,
                )
                for row in query.all()
            ]

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    def record_failure(
        self,
        ref: SignatureRef,
        model: str,
        role: str,
        raw_output: Optional[str],
        reason: str,
    ) -> None:
        """Record a call whose output never validated."""
        fingerprint = _fingerprint_of(ref)
        with self._session("record_failure") as session:
            session.add(
                InvocationFailureRow(
                    fingerprint=fingerprint,
                    model=model,
                    role=role,
                    raw_output=raw_output,
                    reason=reason,
                )
            )

    def count_failures(self, ref: SignatureRef, role: Optional[str] = None) -> int:
        fingerprint = _fingerprint_of(ref)
        with self._session("count_failures") as session:
            query = session.query(func.count(InvocationFailureRow.id)).filter(
                InvocationFailureRow.fingerprint == fingerprint
            )
            if role:
                query = query.filter(InvocationFailureRow.role == role)
            return query.scalar() or 0
