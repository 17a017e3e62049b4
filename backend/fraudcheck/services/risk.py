"""Overall risk classification of a fraud check."""

from typing import Iterable, Tuple

from fraudcheck.schemas import ConsistencyCheckResult, Finding


def aggregate_risk(
    findings: Iterable[Finding],
    checks: Iterable[ConsistencyCheckResult],
) -> Tuple[str, int]:
    """Combine per-document findings and failed cross-checks into (risk, score).

    The thresholds are shared with previously stored results and must not
    change.
    """
    levels = [f.risk_level for f in findings]
    high_count = levels.count("high")
    medium_count = levels.count("medium")
    failed_checks = sum(1 for c in checks if c.status == "fail")

    if high_count > 0 or failed_checks >= 2:
        return "high", min(100, 60 + high_count * 15 + failed_checks * 10)
    if medium_count > 0 or failed_checks >= 1:
        return "medium", min(59, 30 + medium_count * 10 + failed_checks * 10)
    # medium_count is always 0 here; kept for score compatibility
    return "low", max(0, medium_count * 5)
