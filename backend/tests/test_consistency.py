"""Tests for the cross-document consistency rules."""

from fraudcheck.services.consistency import check_consistency


def _by_name(results):
    return {r.check: r for r in results}


def test_matching_identity_passes_all_checks():
    data = {
        "pan_card": {"name": "Asha Verma ", "pan_number": "abcde1234f", "date_of_birth": "1990-04-12"},
        "aadhaar_card": {"full_name": "asha verma", "dob": "1990-04-12"},
        "bank_statement": {"account_holder_name": "ASHA VERMA", "pan": "ABCDE1234F"},
    }
    results = _by_name(check_consistency(data))
    assert results["Name consistency"].status == "pass"
    assert results["Name consistency"].detail == "Name matches across 3 documents"
    assert results["PAN number consistency"].status == "pass"
    assert results["Date of birth consistency"].status == "pass"
    assert "Salary consistency across slips" not in results


def test_two_distinct_names_is_a_warning_three_is_a_failure():
    two = {"pan_card": {"name": "Asha Verma"}, "salary_slip_1": {"employee_name": "Asha K Verma"}}
    assert check_consistency(two)[0].status == "warning"

    three = {**two, "bank_statement": {"account_holder_name": "Ravi Kumar"}}
    result = check_consistency(three)[0]
    assert result.status == "fail"
    assert 'bank_statement: "ravi kumar"' in result.detail


def test_pan_mismatch_fails_and_malformed_pans_are_ignored():
    data = {
        "pan_card": {"pan_number": "ABCDE1234F"},
        "bank_statement": {"pan": "ZZZZZ9999Z"},
        "form_16": {"pan": "SHORT"},
    }
    result = _by_name(check_consistency(data))["PAN number consistency"]
    assert result.status == "fail"
    assert "form_16" not in result.detail


def test_dob_mismatch_fails():
    data = {"pan_card": {"dob": "1990-04-12"}, "aadhaar_card": {"date_of_birth": "1991-04-12"}}
    assert _by_name(check_consistency(data))["Date of birth consistency"].status == "fail"


def test_salary_deviation_thresholds():
    def salary_check(*amounts):
        data = {f"salary_slip_{n}": {"net_salary": amount} for n, amount in enumerate(amounts)}
        return _by_name(check_consistency(data))["Salary consistency across slips"]

    assert salary_check(50000, 51000, 49500).status == "pass"
    assert salary_check(50000, 65000).status == "warning"
    failing = salary_check(40000, 90000)
    assert failing.status == "fail"
    assert failing.detail == "Salary variation of 38% detected across slips"


def test_salary_only_considers_numeric_slip_values():
    data = {
        "salary_slip_1": {"net_pay": 50000},
        "salary_slip_2": {"net_salary": "52000"},
        "bank_statement": {"net_salary": 10000},
    }
    assert check_consistency(data) == []


def test_missing_fields_skip_rules_instead_of_failing():
    assert check_consistency({}) == []
    assert check_consistency({"pan_card": {"name": "Asha"}}) == []
    assert check_consistency({"pan_card": None, "aadhaar_card": "not a dict"}) == []


def test_is_deterministic():
    data = {"pan_card": {"name": "A", "pan": "ABCDE1234F"}, "bank_statement": {"name": "B", "pan": "ABCDE1234G"}}
    assert check_consistency(data) == check_consistency(data)
