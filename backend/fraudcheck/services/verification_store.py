"""Persistence of loan documents and verification runs."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from fraudcheck.database import get_db
from fraudcheck.errors import StaleStepError
from fraudcheck.models import LoanDocument, LoanVerification, RunStatus, DOCUMENT_FRAUD_CHECK, transition
from fraudcheck.models.verification import utcnow

logger = logging.getLogger(__name__)


class VerificationStore:
    """Reads documents and reads/writes verification run records.

    Every write commits immediately so that progress is visible to pollers
    as soon as a step finishes.
    """

    def __init__(self, db: AsyncSession, verification_type: str = DOCUMENT_FRAUD_CHECK):
        self.db = db
        self.verification_type = verification_type

    # Documents

    async def list_analyzable_documents(self, application_id: str) -> List[LoanDocument]:
        """Documents of the application that have stored content."""
        result = await self.db.execute(
            select(LoanDocument)
            .where(LoanDocument.loan_application_id == application_id)
            .where(LoanDocument.file_path.is_not(None))
            .where(LoanDocument.file_path != "")
            .order_by(LoanDocument.uploaded_at, LoanDocument.id)
        )
        return list(result.scalars().all())

    async def get_document(self, document_id: str) -> Optional[LoanDocument]:
        result = await self.db.execute(select(LoanDocument).where(LoanDocument.id == document_id))
        return result.scalar_one_or_none()

    async def collect_extracted_data(self, application_id: str) -> Dict[str, Any]:
        """Extracted structured data of all documents, keyed by document type."""
        result = await self.db.execute(
            select(LoanDocument)
            .where(LoanDocument.loan_application_id == application_id)
            .order_by(LoanDocument.uploaded_at, LoanDocument.id)
        )
        return {
            doc.document_type: doc.ocr_data
            for doc in result.scalars().all()
            if isinstance(doc.ocr_data, dict) and doc.ocr_data
        }

    # Runs

    async def get_run(self, verification_id: str) -> Optional[LoanVerification]:
        result = await self.db.execute(
            select(LoanVerification).where(LoanVerification.id == verification_id)
        )
        return result.scalar_one_or_none()

    async def get_run_for_application(self, application_id: str) -> Optional[LoanVerification]:
        result = await self.db.execute(
            select(LoanVerification)
            .where(LoanVerification.loan_application_id == application_id)
            .where(LoanVerification.verification_type == self.verification_type)
        )
        return result.scalar_one_or_none()

    def _reset(self, run: LoanVerification, document_ids: List[str]) -> None:
        now = utcnow()
        run.status = RunStatus.IN_PROGRESS.value
        run.total_items = len(document_ids)
        run.processed_count = 0
        run.current_item_label = None
        run.document_ids = list(document_ids)
        run.findings = []
        run.response_data = None
        run.remarks = None
        run.verified_at = None
        run.resume_attempts = 0
        run.last_error = None
        run.started_at = now
        run.updated_at = now
        run.generation = (run.generation or 0) + 1

    async def start_run(self, application_id: str, document_ids: List[str]) -> LoanVerification:
        """Create the run for the application, or restart the existing one in place."""
        run = await self.get_run_for_application(application_id)
        if run is None:
            run = LoanVerification(
                loan_application_id=application_id,
                verification_type=self.verification_type,
            )
            self.db.add(run)
        elif run.run_status is RunStatus.IN_PROGRESS:
            logger.warning(
                f"[Store] Restarting verification {run.id} for {application_id} "
                f"at {run.processed_count}/{run.total_items}"
            )
        self._reset(run, document_ids)

        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent start inserted the row first; overwrite it
            await self.db.rollback()
            run = await self.get_run_for_application(application_id)
            if run is None:
                raise
            self._reset(run, document_ids)
            await self.db.commit()
        return run

    async def record_progress(
        self,
        run: LoanVerification,
        processed_count: int,
        current_item_label: str,
        findings: List[Dict[str, Any]],
    ) -> None:
        """Mirror a finished step onto the run record."""
        await self._write_if_unchanged(run, dict(
            status=transition(run.status, RunStatus.IN_PROGRESS).value,
            processed_count=processed_count,
            current_item_label=current_item_label,
            findings=list(findings),
            last_error=None,
            updated_at=utcnow(),
        ))

    async def complete_run(
        self,
        run: LoanVerification,
        status: RunStatus,
        result: Dict[str, Any],
        source: str,
        remarks: str,
    ) -> None:
        now = utcnow()
        await self._write_if_unchanged(run, dict(
            status=transition(run.status, status).value,
            response_data=result,
            verification_source=source,
            remarks=remarks,
            current_item_label=None,
            verified_at=now,
            updated_at=now,
        ))

    async def _write_if_unchanged(self, run: LoanVerification, values: Dict[str, Any]) -> None:
        """Compare-and-set update of a run.

        Applies ``values`` only while the stored run is still in progress, at
        the same generation and at the same ``processed_count`` as ``run``.
        Otherwise a restart or a concurrent step got there first and
        ``StaleStepError`` is raised.
        """
        result = await self.db.execute(
            update(LoanVerification)
            .where(LoanVerification.id == run.id)
            .where(LoanVerification.generation == run.generation)
            .where(LoanVerification.processed_count == run.processed_count)
            .where(LoanVerification.status == RunStatus.IN_PROGRESS.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            message = (
                f"Verification {run.id} was restarted or advanced by another step "
                f"(expected document {run.processed_count})"
            )
            await self.db.rollback()
            raise StaleStepError(message)
        await self.db.commit()
        await self.db.refresh(run)

    async def record_resume(self, run: LoanVerification) -> None:
        run.resume_attempts = (run.resume_attempts or 0) + 1
        run.updated_at = utcnow()
        await self.db.commit()

    async def record_error(self, verification_id: str, message: str) -> None:
        """Attach a dispatch/processing error to a run without touching progress."""
        run = await self.get_run(verification_id)
        if run is None:
            return
        run.last_error = message[:2000]
        await self.db.commit()

    async def find_stalled_runs(self, updated_before: datetime, max_attempts: int) -> List[LoanVerification]:
        result = await self.db.execute(
            select(LoanVerification)
            .where(LoanVerification.verification_type == self.verification_type)
            .where(LoanVerification.status == RunStatus.IN_PROGRESS.value)
            .where(LoanVerification.updated_at < updated_before)
            .where(LoanVerification.resume_attempts < max_attempts)
            .order_by(LoanVerification.updated_at)
        )
        return list(result.scalars().all())


def run_to_dict(run: LoanVerification) -> Dict[str, Any]:
    """Polling view of a run."""
    return {
        "verificationId": run.id,
        "applicationId": run.loan_application_id,
        "verificationType": run.verification_type,
        "status": run.status,
        "totalDocuments": run.total_items or 0,
        "processed": run.processed_count or 0,
        "currentDocument": run.current_item_label,
        "findings": run.findings or [],
        "result": run.response_data,
        "remarks": run.remarks,
        "lastError": run.last_error,
        "startedAt": run.started_at.isoformat() if run.started_at else None,
        "updatedAt": run.updated_at.isoformat() if run.updated_at else None,
        "verifiedAt": run.verified_at.isoformat() if run.verified_at else None,
    }


async def get_verification_store(db: AsyncSession = Depends(get_db)) -> VerificationStore:
    """Dependency to get the verification store."""
    return VerificationStore(db)
