"""Verification runs and their status state machine."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, UniqueConstraint
from fraudcheck.database import Base
from fraudcheck.errors import InvalidTransitionError

DOCUMENT_FRAUD_CHECK = "document_fraud_check"


class RunStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.IN_PROGRESS


ALLOWED_TRANSITIONS = {
    RunStatus.IN_PROGRESS: {RunStatus.IN_PROGRESS, RunStatus.SUCCESS, RunStatus.WARNING, RunStatus.FAILED},
    RunStatus.SUCCESS: set(),
    RunStatus.WARNING: set(),
    RunStatus.FAILED: set(),
}

# Overall risk -> terminal status
RISK_STATUS = {
    "high": RunStatus.FAILED,
    "medium": RunStatus.WARNING,
    "low": RunStatus.SUCCESS,
}


def transition(current, new) -> RunStatus:
    """Return ``new`` if the run may move there from ``current``."""
    current, new = RunStatus(current), RunStatus(new)
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, new.value)
    return new


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LoanVerification(Base):
    """Progress and result of one verification run per application and type."""
    __tablename__ = "loan_verifications"
    __table_args__ = (
        UniqueConstraint("loan_application_id", "verification_type", name="uq_verification_application_type"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    loan_application_id = Column(String(64), nullable=False, index=True)
    verification_type = Column(String(50), nullable=False, default=DOCUMENT_FRAUD_CHECK)
    status = Column(String(20), nullable=False, default=RunStatus.IN_PROGRESS.value)

    # Progress
    total_items = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    current_item_label = Column(String(200), nullable=True)
    document_ids = Column(JSON, default=list)  # Ordered work list of the current run
    findings = Column(JSON, default=list)  # One finding dict per processed document

    # Result (terminal states only)
    response_data = Column(JSON, nullable=True)
    verification_source = Column(String(50), nullable=True)  # ai_gemini, ai_openai, ...
    remarks = Column(Text, nullable=True)

    # Bumped on every (re)start; progress writes of an older chain no longer match
    generation = Column(Integer, default=0, nullable=False)

    # Stalled chain recovery
    resume_attempts = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)

    started_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    verified_at = Column(DateTime, nullable=True)

    @property
    def run_status(self) -> RunStatus:
        return RunStatus(self.status)
