from fraudcheck.models.loan_document import LoanDocument
from fraudcheck.models.verification import (
    LoanVerification,
    RunStatus,
    RISK_STATUS,
    DOCUMENT_FRAUD_CHECK,
    transition,
)
from fraudcheck.models.provider_model import LLMProvider

__all__ = [
    "LoanDocument",
    "LoanVerification",
    "RunStatus",
    "RISK_STATUS",
    "DOCUMENT_FRAUD_CHECK",
    "transition",
    "LLMProvider",
]
