"""Fraud analysis of a single loan document."""

import json
import logging
import re
from typing import Any, Dict

from fraudcheck.errors import AnalysisError, DocumentFetchError, RateLimitedError
from fraudcheck.models import LoanDocument
from fraudcheck.prompts.fraud_prompts import FRAUD_SYSTEM_PROMPT, fraud_user_prompt
from fraudcheck.schemas import Finding
from fraudcheck.services.llm_provider import AnalysisProviderService
from fraudcheck.services.storage_client import StorageClient

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"
RISK_LEVELS = ("low", "medium", "high")


class DocumentAnalyzer:
    """Downloads one document and asks the analysis provider for a finding.

    Makes exactly one attempt. Every failure is raised as an ``AnalysisError``
    subclass; retries and fallbacks belong to the caller.
    """

    def __init__(self, storage: StorageClient, provider: AnalysisProviderService):
        self.storage = storage
        self.provider = provider

    async def analyze(self, document: LoanDocument) -> Finding:
        try:
            content = await self.storage.download(document.file_path)
        except Exception as e:
            raise DocumentFetchError(f"Could not download {document.file_path}: {e}") from e

        mime_type = document.mime_type or DEFAULT_MIME_TYPE
        logger.info(
            f"[Analyzer] Analyzing {document.document_type} ({len(content)} bytes, {mime_type}) "
            f"with {self.provider.source_tag}"
        )

        try:
            reply = await self.provider.analyze(
                FRAUD_SYSTEM_PROMPT,
                fraud_user_prompt(document.document_type),
                content,
                mime_type,
            )
        except RateLimitedError:
            raise
        except Exception as e:
            raise AnalysisError(f"Analysis service error: {e}") from e

        parsed = parse_analysis_reply(reply)
        finding = Finding(
            document_id=document.id,
            document_type=document.document_type,
            risk_level=parsed["risk_level"],
            confidence=parsed["confidence"],
            issues=parsed["issues"],
            details=parsed["details"],
        )
        logger.info(f"[Analyzer] {document.document_type}: {finding.risk_level} risk")
        return finding


def parse_analysis_reply(reply: str) -> Dict[str, Any]:
    """Extract and normalise the JSON object in a model reply.

    Raises ``AnalysisError`` if there is no usable object or the risk level is
    not one of low/medium/high.
    """
    match = re.search(r"\{[\s\S]*\}", reply or "")
    if not match:
        raise AnalysisError("No JSON object in analysis response")

    # Models sometimes leave trailing commas before } or ]
    json_str = re.sub(r",(\s*[}\]])", r"\1", match.group())
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise AnalysisError(f"Malformed analysis response: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisError("Analysis response is not a JSON object")

    risk_level = str(data.get("risk_level", "")).strip().lower()
    if risk_level not in RISK_LEVELS:
        raise AnalysisError(f"Unexpected risk level: {data.get('risk_level')!r}")

    try:
        confidence = int(round(float(data.get("confidence") or 0)))
    except (TypeError, ValueError):
        confidence = 0

    issues = data.get("issues") or []
    if isinstance(issues, str):
        issues = [issues]

    return {
        "risk_level": risk_level,
        "confidence": min(100, max(0, confidence)),
        "issues": [str(issue) for issue in issues if issue],
        "details": str(data.get("details") or ""),
    }
