"""Chained document fraud check.

Each step analyzes one document of a loan application, mirrors the progress
onto the verification record and dispatches the next step. The last step runs
the cross-document checks and stores the overall risk.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from fraudcheck.database import async_session, get_db
from fraudcheck.errors import (
    DocumentFetchError,
    InvalidStepError,
    MissingApplicationIdError,
    NoDocumentsFoundError,
    RateLimitedError,
    RunNotFoundError,
    StaleStepError,
)
from fraudcheck.models import LoanVerification, RISK_STATUS
from fraudcheck.models.verification import utcnow
from fraudcheck.schemas import Finding, StepPayload
from fraudcheck.services.consistency import check_consistency
from fraudcheck.services.dispatch import ChainDispatcher, get_dispatcher
from fraudcheck.services.document_analyzer import DocumentAnalyzer
from fraudcheck.services.llm_provider import build_analysis_service, load_active_provider
from fraudcheck.services.risk import aggregate_risk
from fraudcheck.services.storage_client import get_storage_client
from fraudcheck.services.verification_store import VerificationStore

logger = logging.getLogger(__name__)


class FraudCheckChain:
    """Drives a verification run one document at a time."""

    def __init__(
        self,
        store: VerificationStore,
        analyzer: DocumentAnalyzer,
        dispatcher: ChainDispatcher,
        source: str = "ai_unconfigured",
    ):
        self.store = store
        self.analyzer = analyzer
        self.dispatcher = dispatcher
        self.source = source

    async def start_run(self, application_id: Optional[str]) -> Dict[str, Any]:
        """Create (or restart) the run and dispatch its first step."""
        if not application_id:
            raise MissingApplicationIdError()

        documents = await self.store.list_analyzable_documents(application_id)
        if not documents:
            raise NoDocumentsFoundError(application_id)

        document_ids = [doc.id for doc in documents]
        run = await self.store.start_run(application_id, document_ids)
        logger.info(
            f"[FraudCheck] Found {len(document_ids)} documents for application {application_id}, "
            f"verification {run.id}"
        )

        await self.dispatcher.dispatch(StepPayload(
            application_id=application_id,
            current_index=0,
            document_ids=document_ids,
            accumulated_findings=[],
            verification_id=run.id,
        ))
        return {"status": "processing", "verificationId": run.id, "totalDocuments": len(document_ids)}

    async def step_run(
        self,
        application_id: Optional[str],
        cursor: int,
        document_ids: Optional[Sequence[str]],
        accumulated_findings: Sequence[Finding],
        verification_id: Optional[str],
    ) -> Dict[str, Any]:
        """Analyze ``document_ids[cursor]``, persist progress, then continue or finalize."""
        if not application_id:
            raise MissingApplicationIdError()
        if not verification_id:
            raise InvalidStepError("verificationId is required for a chained step")
        document_ids = list(document_ids or [])
        if not 0 <= cursor < len(document_ids):
            raise InvalidStepError(f"currentIndex {cursor} out of range for {len(document_ids)} documents")

        run = await self._load_step_run(application_id, cursor, document_ids, verification_id)

        findings = list(run.findings or [])
        supplied = [f.model_dump(mode="json") for f in accumulated_findings]
        if supplied != findings:
            logger.warning(
                f"[FraudCheck] Verification {run.id}: supplied findings differ from stored ones, "
                f"continuing from the stored {len(findings)}"
            )

        document_id = document_ids[cursor]
        finding, label = await self._analyze_document(document_id)
        findings.append(finding.model_dump(mode="json"))

        processed = cursor + 1
        await self.store.record_progress(run, processed, label, findings)
        logger.info(f"[FraudCheck] Verification {run.id}: {processed}/{len(document_ids)} documents analyzed")

        if processed < len(document_ids):
            await self.dispatcher.dispatch(StepPayload(
                application_id=application_id,
                current_index=processed,
                document_ids=document_ids,
                accumulated_findings=[Finding.model_validate(f) for f in findings],
                verification_id=run.id,
            ))
            return {"status": "processing", "processed": processed, "total": len(document_ids)}

        return await self.finalize(run)

    async def _load_step_run(
        self,
        application_id: str,
        cursor: int,
        document_ids: List[str],
        verification_id: str,
    ) -> LoanVerification:
        """Fetch the run and make sure this step is the one it is waiting for."""
        run = await self.store.get_run(verification_id)
        if run is None:
            raise RunNotFoundError(verification_id)
        if run.loan_application_id != application_id:
            raise InvalidStepError(f"Verification {verification_id} belongs to another application")
        if run.run_status.is_terminal:
            raise StaleStepError(f"Verification {verification_id} is already {run.status}")
        if run.processed_count != cursor:
            raise StaleStepError(
                f"Verification {verification_id} expects document {run.processed_count}, got {cursor}"
            )
        if run.document_ids and list(run.document_ids) != document_ids:
            raise StaleStepError(f"Verification {verification_id} was restarted with other documents")
        return run

    async def _analyze_document(self, document_id: str):
        """Analyze one document. Never raises; failures become ``unknown`` findings."""
        document = await self.store.get_document(document_id)
        if document is None:
            logger.error(f"[FraudCheck] Document {document_id} not found")
            return Finding.unknown("unknown", "Could not load document for analysis", document_id), document_id

        label = document.document_type or document_id
        try:
            finding = await self.analyzer.analyze(document)
        except RateLimitedError as e:
            logger.warning(f"[FraudCheck] Rate limited while analyzing {label}: {e}")
            finding = Finding.unknown(document.document_type, "Rate limited - try again later", document_id)
        except DocumentFetchError as e:
            logger.error(f"[FraudCheck] Failed to download {label}: {e}")
            finding = Finding.unknown(document.document_type, "Could not download document for analysis", document_id)
        except Exception as e:
            logger.error(f"[FraudCheck] AI analysis failed for {label}: {e}")
            finding = Finding.unknown(document.document_type, f"AI analysis failed: {e}", document_id)
        return finding, label

    async def finalize(self, run: LoanVerification) -> Dict[str, Any]:
        """Cross-check all documents of the application and store the verdict."""
        findings = [Finding.model_validate(f) for f in run.findings or []]
        extracted = await self.store.collect_extracted_data(run.loan_application_id)
        checks = check_consistency(extracted)
        overall_risk, risk_score = aggregate_risk(findings, checks)
        status = RISK_STATUS[overall_risk]

        result = {
            "overall_risk": overall_risk,
            "risk_score": risk_score,
            "documents_analyzed": len(findings),
            "findings": [f.model_dump(mode="json") for f in findings],
            "cross_document_checks": [c.model_dump(mode="json") for c in checks],
            "analyzed_at": datetime.now(timezone.utc).isoformat(),
        }
        remarks = (
            f"Fraud check: {overall_risk} risk (score: {risk_score}). "
            f"{len(findings)} documents analyzed."
        )
        await self.store.complete_run(run, status, result, self.source, remarks)
        logger.info(f"[FraudCheck] Verification {run.id} completed: {remarks}")

        return {"status": "completed", "overall_risk": overall_risk, "risk_score": risk_score}

    async def resume_stalled(self, stale_after: timedelta, max_attempts: int, dry_run: bool = False) -> List[str]:
        """Resume in-progress runs that have not written progress for ``stale_after``."""
        cutoff = utcnow() - stale_after
        run_ids = [run.id for run in await self.store.find_stalled_runs(cutoff, max_attempts)]
        resumed = []
        for run_id in run_ids:
            # Re-read each run; a rollback below expires everything loaded so far
            run = await self.store.get_run(run_id)
            if run is None or run.run_status.is_terminal:
                continue
            logger.warning(
                f"[Reconciler] Verification {run.id} stalled at {run.processed_count}/{run.total_items} "
                f"(attempt {(run.resume_attempts or 0) + 1}/{max_attempts})"
            )
            resumed.append(run.id)
            if dry_run:
                continue

            await self.store.record_resume(run)
            document_ids = list(run.document_ids or [])
            try:
                if run.processed_count < len(document_ids):
                    await self.dispatcher.dispatch(StepPayload(
                        application_id=run.loan_application_id,
                        current_index=run.processed_count,
                        document_ids=document_ids,
                        accumulated_findings=[Finding.model_validate(f) for f in run.findings or []],
                        verification_id=run.id,
                    ))
                else:
                    await self.finalize(run)
            except Exception as e:
                logger.exception(f"[Reconciler] Could not resume verification {run.id}")
                await self.store.db.rollback()
                await self.store.record_error(run.id, f"Resume failed: {e}")
        return resumed


async def build_chain(db: AsyncSession, dispatcher: Optional[ChainDispatcher] = None) -> FraudCheckChain:
    """Wire a chain to the active analysis provider and the configured dispatcher."""
    service = build_analysis_service(await load_active_provider(db))
    return FraudCheckChain(
        store=VerificationStore(db),
        analyzer=DocumentAnalyzer(get_storage_client(), service),
        dispatcher=dispatcher or get_dispatcher(),
        source=service.source_tag,
    )


async def get_fraud_check_chain(db: AsyncSession = Depends(get_db)) -> FraudCheckChain:
    """Dependency to get a chain bound to the request session."""
    return await build_chain(db)


async def run_step_job(payload: StepPayload, session_factory=None) -> Dict[str, Any]:
    """Run one dispatched step in its own session (queue worker entry point)."""
    async with (session_factory or async_session)() as db:
        chain = await build_chain(db)
        return await chain.step_run(
            payload.application_id,
            payload.current_index,
            payload.document_ids,
            payload.accumulated_findings,
            payload.verification_id,
        )


async def record_step_failure(verification_id: str, message: str, session_factory=None) -> None:
    async with (session_factory or async_session)() as db:
        await VerificationStore(db).record_error(verification_id, message)
