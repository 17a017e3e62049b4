"""Tests for single document analysis and reply parsing."""

import asyncio

import pytest

from fraudcheck.errors import AnalysisError, DocumentFetchError, RateLimitedError
from fraudcheck.models import LoanDocument
from fraudcheck.prompts.fraud_prompts import FRAUD_SYSTEM_PROMPT
from fraudcheck.services.document_analyzer import DocumentAnalyzer, parse_analysis_reply


class FakeStorage:
    def __init__(self, content=b"\xff\xd8jpeg-bytes", error=None):
        self.content = content
        self.error = error
        self.paths = []

    async def download(self, file_path):
        self.paths.append(file_path)
        if self.error:
            raise self.error
        return self.content


class FakeProvider:
    source_tag = "ai_fake"

    def __init__(self, reply="", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def analyze(self, system_prompt, user_text, content, mime_type):
        self.calls.append((system_prompt, user_text, content, mime_type))
        if self.error:
            raise self.error
        return self.reply


def _document(**overrides):
    values = dict(
        id="doc-1",
        loan_application_id="app-1",
        document_type="salary_slip_1",
        file_path="app-1/salary_slip_1.jpg",
        mime_type=None,
    )
    values.update(overrides)
    return LoanDocument(**values)


def test_parse_plain_json_reply():
    parsed = parse_analysis_reply(
        '{"risk_level": "Medium", "confidence": 72.6, "issues": ["Blurred amount"], "details": "Edited net pay"}'
    )
    assert parsed == {
        "risk_level": "medium",
        "confidence": 73,
        "issues": ["Blurred amount"],
        "details": "Edited net pay",
    }


def test_parse_reply_wrapped_in_markdown_with_trailing_commas():
    reply = 'Here you go:\n```json\n{"risk_level": "low", "confidence": 95, "issues": [],}\n```'
    parsed = parse_analysis_reply(reply)
    assert parsed["risk_level"] == "low"
    assert parsed["issues"] == []
    assert parsed["details"] == ""


def test_parse_normalises_odd_field_types():
    parsed = parse_analysis_reply('{"risk_level": "high", "confidence": 250, "issues": "Photo replaced"}')
    assert parsed["confidence"] == 100
    assert parsed["issues"] == ["Photo replaced"]

    parsed = parse_analysis_reply('{"risk_level": "low", "confidence": "n/a"}')
    assert parsed["confidence"] == 0


@pytest.mark.parametrize("reply", [
    "",
    "The document looks fine.",
    '{"risk_level": "low", "issues": [}',
    '{"confidence": 80}',
    '{"risk_level": "critical"}',
])
def test_parse_rejects_malformed_replies(reply):
    with pytest.raises(AnalysisError):
        parse_analysis_reply(reply)


def test_analyze_returns_finding_for_the_document():
    storage = FakeStorage()
    provider = FakeProvider('{"risk_level": "high", "confidence": 88, "issues": ["Font mismatch"], "details": "x"}')
    analyzer = DocumentAnalyzer(storage, provider)

    finding = asyncio.run(analyzer.analyze(_document()))

    assert finding.document_id == "doc-1"
    assert finding.document_type == "salary_slip_1"
    assert finding.risk_level == "high"
    assert finding.confidence == 88
    assert finding.issues == ["Font mismatch"]
    assert storage.paths == ["app-1/salary_slip_1.jpg"]

    system_prompt, user_text, content, mime_type = provider.calls[0]
    assert system_prompt == FRAUD_SYSTEM_PROMPT
    assert user_text == "Analyze this salary slip 1 document for signs of fraud or tampering."
    assert content == storage.content
    assert mime_type == "image/jpeg"


def test_analyze_passes_declared_mime_type():
    provider = FakeProvider('{"risk_level": "low", "confidence": 90}')
    analyzer = DocumentAnalyzer(FakeStorage(content=b"%PDF-1.7"), provider)
    asyncio.run(analyzer.analyze(_document(mime_type="application/pdf")))
    assert provider.calls[0][3] == "application/pdf"


def test_download_failure_raises_fetch_error_without_calling_provider():
    provider = FakeProvider()
    analyzer = DocumentAnalyzer(FakeStorage(error=OSError("404 Not Found")), provider)
    with pytest.raises(DocumentFetchError):
        asyncio.run(analyzer.analyze(_document()))
    assert provider.calls == []


def test_provider_failure_raises_analysis_error():
    analyzer = DocumentAnalyzer(FakeStorage(), FakeProvider(error=ConnectionError("unreachable")))
    with pytest.raises(AnalysisError, match="unreachable"):
        asyncio.run(analyzer.analyze(_document()))


def test_rate_limit_is_reported_as_such():
    analyzer = DocumentAnalyzer(FakeStorage(), FakeProvider(error=RateLimitedError("429")))
    with pytest.raises(RateLimitedError):
        asyncio.run(analyzer.analyze(_document()))


def test_analyzer_makes_a_single_attempt():
    provider = FakeProvider(error=TimeoutError("slow"))
    analyzer = DocumentAnalyzer(FakeStorage(), provider)
    with pytest.raises(AnalysisError):
        asyncio.run(analyzer.analyze(_document()))
    assert len(provider.calls) == 1
