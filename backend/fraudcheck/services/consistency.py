"""
Cross-document consistency checks.

Compares structured data previously extracted from the documents of one
application (keyed by document type). Every rule needs the relevant field on at
least two documents; otherwise it is skipped rather than failed.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from fraudcheck.schemas import ConsistencyCheckResult

logger = logging.getLogger(__name__)

NAME_FIELDS = ("name", "full_name", "employee_name", "account_holder_name")
PAN_FIELDS = ("pan_number", "pan")
DOB_FIELDS = ("date_of_birth", "dob")
SALARY_FIELDS = ("net_salary", "net_pay", "gross_salary")

SALARY_PASS_DEVIATION = 0.1
SALARY_WARN_DEVIATION = 0.3


def _first_value(data: Mapping[str, Any], fields) -> Any:
    for field in fields:
        value = data.get(field)
        if value:
            return value
    return None


def _collect(ocr_data: Mapping[str, Any], fields, accept) -> Dict[str, Any]:
    values = {}
    for doc_type, data in ocr_data.items():
        if not isinstance(data, Mapping):
            continue
        value = accept(_first_value(data, fields))
        if value is not None:
            values[doc_type] = value
    return values


def _describe(values: Dict[str, Any], quote: bool = False) -> str:
    if quote:
        return ", ".join(f'{k}: "{v}"' for k, v in values.items())
    return ", ".join(f"{k}: {v}" for k, v in values.items())


def check_names(ocr_data: Mapping[str, Any]) -> Optional[ConsistencyCheckResult]:
    names = _collect(
        ocr_data, NAME_FIELDS,
        lambda v: v.strip().lower() if isinstance(v, str) else None,
    )
    if len(names) < 2:
        return None

    unique = set(names.values())
    if len(unique) == 1:
        return ConsistencyCheckResult(
            check="Name consistency", status="pass",
            detail=f"Name matches across {len(names)} documents",
        )
    # Two spellings is usually an initial or middle name, not a different person
    return ConsistencyCheckResult(
        check="Name consistency",
        status="warning" if len(unique) <= 2 else "fail",
        detail=f"Different names found: {_describe(names, quote=True)}",
    )


def check_pan_numbers(ocr_data: Mapping[str, Any]) -> Optional[ConsistencyCheckResult]:
    pans = _collect(
        ocr_data, PAN_FIELDS,
        lambda v: v.upper() if isinstance(v, str) and len(v) == 10 else None,
    )
    if len(pans) < 2:
        return None

    if len(set(pans.values())) == 1:
        return ConsistencyCheckResult(
            check="PAN number consistency", status="pass",
            detail="PAN number matches across documents",
        )
    return ConsistencyCheckResult(
        check="PAN number consistency", status="fail",
        detail=f"Mismatched PAN numbers: {_describe(pans)}",
    )


def check_dates_of_birth(ocr_data: Mapping[str, Any]) -> Optional[ConsistencyCheckResult]:
    dobs = _collect(ocr_data, DOB_FIELDS, lambda v: v if isinstance(v, str) else None)
    if len(dobs) < 2:
        return None

    if len(set(dobs.values())) == 1:
        return ConsistencyCheckResult(
            check="Date of birth consistency", status="pass",
            detail="DOB matches across documents",
        )
    return ConsistencyCheckResult(
        check="Date of birth consistency", status="fail",
        detail=f"Different DOBs found: {_describe(dobs)}",
    )


def check_salaries(ocr_data: Mapping[str, Any]) -> Optional[ConsistencyCheckResult]:
    slips = {k: v for k, v in ocr_data.items() if k.startswith("salary_slip")}
    salaries = _collect(
        slips, SALARY_FIELDS,
        lambda v: float(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else None,
    )
    if len(salaries) < 2:
        return None

    values = list(salaries.values())
    average = sum(values) / len(values)
    if average == 0:
        return None
    max_deviation = max(abs(v - average) / average for v in values)

    if max_deviation < SALARY_PASS_DEVIATION:
        return ConsistencyCheckResult(
            check="Salary consistency across slips", status="pass",
            detail="Salary amounts are consistent across slips",
        )
    return ConsistencyCheckResult(
        check="Salary consistency across slips",
        status="warning" if max_deviation < SALARY_WARN_DEVIATION else "fail",
        detail=f"Salary variation of {max_deviation * 100:.0f}% detected across slips",
    )


CHECKS = (check_names, check_pan_numbers, check_dates_of_birth, check_salaries)


def check_consistency(ocr_data: Mapping[str, Any]) -> List[ConsistencyCheckResult]:
    """Run every rule over ``{document_type: extracted_data}``."""
    results = []
    for check in CHECKS:
        result = check(ocr_data)
        if result is not None:
            results.append(result)
    logger.debug(f"[Consistency] {len(results)} checks evaluated over {len(ocr_data)} documents")
    return results
