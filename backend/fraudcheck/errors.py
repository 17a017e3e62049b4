"""Exceptions raised by the fraud check pipeline.

Errors that reach the HTTP layer carry the status code they map to; the
router renders them as ``{"error": message}``.
"""


class FraudCheckError(Exception):
    """Base class for expected pipeline errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingApplicationIdError(FraudCheckError):
    status_code = 400

    def __init__(self, message: str = "applicationId is required"):
        super().__init__(message)


class NoDocumentsFoundError(FraudCheckError):
    status_code = 404

    def __init__(self, application_id: str):
        super().__init__("No documents found for this application")
        self.application_id = application_id


class RunNotFoundError(FraudCheckError):
    status_code = 404

    def __init__(self, verification_id: str):
        super().__init__(f"Verification {verification_id} not found")
        self.verification_id = verification_id


class InvalidStepError(FraudCheckError):
    """Chained request is malformed (cursor out of range, missing ids)."""

    status_code = 400


class StaleStepError(FraudCheckError):
    """Chained request no longer matches the stored run."""

    status_code = 409


class InvalidTransitionError(FraudCheckError):
    status_code = 409

    def __init__(self, current: str, new: str):
        super().__init__(f"invalid transition: {current} -> {new}")
        self.current = current
        self.new = new


class AnalysisError(Exception):
    """Single document analysis failed. Never leaves the chain driver."""


class DocumentFetchError(AnalysisError):
    pass


class RateLimitedError(AnalysisError):
    pass


class DispatchError(Exception):
    """The receiving instance answered a dispatched step with a server error."""
