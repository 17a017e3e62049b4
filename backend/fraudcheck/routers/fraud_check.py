"""Fraud check endpoints: start/continue a chain and poll its progress."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from fraudcheck.errors import FraudCheckError, RunNotFoundError
from fraudcheck.schemas import FraudCheckRequest
from fraudcheck.services.fraud_check import FraudCheckChain, get_fraud_check_chain
from fraudcheck.services.reconciler import reconcile_once
from fraudcheck.services.verification_store import VerificationStore, get_verification_store, run_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@router.post("")
async def run_fraud_check(
    request: FraudCheckRequest,
    chain: FraudCheckChain = Depends(get_fraud_check_chain),
):
    """Start a fraud check (``applicationId`` only) or run one chained step."""
    try:
        if request.is_chained:
            result = await chain.step_run(
                request.application_id,
                request.current_index,
                request.document_ids,
                request.accumulated_findings,
                request.verification_id,
            )
            return JSONResponse(result)

        result = await chain.start_run(request.application_id)
        return JSONResponse(result, status_code=202)
    except FraudCheckError as e:
        logger.warning(f"[FraudCheck] Rejected request: {e.message}")
        return error_response(e.status_code, e.message)
    except Exception as e:
        logger.exception("[FraudCheck] Error")
        return error_response(500, str(e) or "Unknown error")


@router.post("/reconcile")
async def reconcile_stalled(dry_run: bool = False):
    """Resume verifications whose chain stopped making progress."""
    try:
        resumed = await reconcile_once(dry_run=dry_run)
    except Exception as e:
        logger.exception("[Reconciler] Manual sweep failed")
        return error_response(500, str(e) or "Unknown error")
    return {"resumed": resumed, "count": len(resumed), "dry_run": dry_run}


@router.get("/application/{application_id}")
async def get_application_verification(
    application_id: str,
    store: VerificationStore = Depends(get_verification_store),
):
    """Latest fraud check of an application."""
    run = await store.get_run_for_application(application_id)
    if run is None:
        return error_response(404, f"No fraud check for application {application_id}")
    return run_to_dict(run)


@router.get("/{verification_id}")
async def get_verification(
    verification_id: str,
    store: VerificationStore = Depends(get_verification_store),
):
    """Progress (or result) of a fraud check run."""
    run = await store.get_run(verification_id)
    if run is None:
        error = RunNotFoundError(verification_id)
        return error_response(error.status_code, error.message)
    return run_to_dict(run)
