"""Pydantic models shared by the pipeline and the API."""

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

RiskLevel = Literal["low", "medium", "high", "unknown"]


class Finding(BaseModel):
    """Fraud assessment of a single document."""
    model_config = ConfigDict(frozen=True)

    document_id: Optional[str] = None
    document_type: str
    risk_level: RiskLevel
    confidence: int = Field(0, ge=0, le=100)
    issues: List[str] = Field(default_factory=list)
    details: str = ""

    @classmethod
    def unknown(cls, document_type: str, issue: str, document_id: Optional[str] = None) -> "Finding":
        """Finding recorded when a document could not be analyzed."""
        return cls(
            document_id=document_id,
            document_type=document_type,
            risk_level="unknown",
            confidence=0,
            issues=[issue],
        )


class ConsistencyCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    check: str
    status: Literal["pass", "warning", "fail"]
    detail: Optional[str] = None


class FraudCheckRequest(BaseModel):
    """Initial request (only ``applicationId``) or a chained step request."""
    model_config = ConfigDict(populate_by_name=True)

    application_id: Optional[str] = Field(None, alias="applicationId")
    current_index: Optional[int] = Field(None, alias="currentIndex")
    document_ids: Optional[List[str]] = Field(None, alias="documentIds")
    accumulated_findings: List[Finding] = Field(default_factory=list, alias="accumulatedFindings")
    verification_id: Optional[str] = Field(None, alias="verificationId")

    @field_validator("application_id")
    @classmethod
    def strip_application_id(cls, value):
        return value.strip() if isinstance(value, str) else value

    @property
    def is_chained(self) -> bool:
        return self.current_index is not None


class StepPayload(BaseModel):
    """Everything a chain step needs; this is the body of a chained request."""
    model_config = ConfigDict(populate_by_name=True)

    application_id: str = Field(alias="applicationId")
    current_index: int = Field(alias="currentIndex")
    document_ids: List[str] = Field(alias="documentIds")
    accumulated_findings: List[Finding] = Field(default_factory=list, alias="accumulatedFindings")
    verification_id: str = Field(alias="verificationId")

    def to_request_body(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class AnalysisProviderSchema(BaseModel):
    display_name: Optional[str] = None
    api_key: Optional[str] = ""
    api_base_url: Optional[str] = ""
    model: Optional[str] = ""
    request_timeout: Optional[float] = Field(None, gt=0)
    max_pdf_pages: Optional[int] = Field(None, ge=1, le=20)
    is_active: bool = False
