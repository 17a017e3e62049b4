"""Loan documents uploaded for an application."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, JSON
from fraudcheck.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LoanDocument(Base):
    """A document belonging to a loan application."""
    __tablename__ = "loan_documents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    loan_application_id = Column(String(64), nullable=False, index=True)
    document_type = Column(String(100), nullable=False)  # pan_card, salary_slip_1, bank_statement, ...
    file_path = Column(String(1000), default="")  # Path inside the storage bucket, empty if not uploaded
    mime_type = Column(String(100), nullable=True)
    ocr_data = Column(JSON, nullable=True)  # Structured fields extracted earlier (name, pan_number, dob, ...)
    uploaded_at = Column(DateTime, default=_utcnow)
