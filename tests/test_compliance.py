from recordbridge.models import YtdTotals
from recordbridge.utils.compliance import IRS_LIMITS, ContributionComplianceChecker, get_irs_limits

def contribution(employee="E1", pre_tax=0, roth=0, match=0, **extra):
    record = {
        "employeeId": employee,
        "payrollDate": "2025-03-15",
        "employeePreTax": pre_tax,
        "employeeRoth": roth,
        "employerMatch": match,
    }
    record.update(extra)
    return record

def codes(result):
    return [issue.code for issue in result.errors]

def test_running_totals_across_batch():
    """Test later contributions are judged against earlier ones in the same batch"""
    checker = ContributionComplianceChecker(warning_ratio=0.9)
    records = [(0, contribution(pre_tax=2000000)), (1, contribution(pre_tax=400000))]

    results = checker.check_batch(records)

    assert results[0].valid
    assert codes(results[1]) == ["EXCEEDS_EMPLOYEE_ELECTIVE_LIMIT"]

def test_totals_are_per_employee():
    """Test different employees do not share totals"""
    checker = ContributionComplianceChecker(warning_ratio=0.9)
    records = [(0, contribution(employee="E1", pre_tax=2000000)), (1, contribution(employee="E2", pre_tax=400000))]

    results = checker.check_batch(records)

    assert results[0].valid and results[1].valid

def test_catch_up_raises_limit():
    """Test participants aged 50 or more get the catch-up allowance"""
    checker = ContributionComplianceChecker(warning_ratio=0.9)
    records = [(0, contribution(pre_tax=2400000, dateOfBirth="1970-01-01"))]

    assert checker.check_batch(records)[0].valid

def test_baselines_seed_running_totals():
    """Test caller-supplied year-to-date totals count toward the limit"""
    checker = ContributionComplianceChecker(warning_ratio=0.9)
    baselines = {"E1": YtdTotals(employee_elective=2300000)}

    results = checker.check_batch([(0, contribution(pre_tax=100000))], baselines=baselines)

    assert codes(results[0]) == ["EXCEEDS_EMPLOYEE_ELECTIVE_LIMIT"]

def test_approaching_limit_warning():
    """Test a warning once contributions pass the warning ratio"""
    checker = ContributionComplianceChecker(warning_ratio=0.9)

    result = checker.check_batch([(0, contribution(pre_tax=2200000))])[0]

    assert result.valid
    assert [w.code for w in result.warnings] == ["APPROACHING_EMPLOYEE_LIMIT"]

def test_annual_additions_limit():
    """Test the 415 limit on employee plus employer contributions"""
    checker = ContributionComplianceChecker(warning_ratio=0.9)

    result = checker.check_batch([(0, contribution(pre_tax=1000000, match=6500000))])[0]

    assert codes(result) == ["EXCEEDS_415_LIMIT"]
    assert result.errors[0].field == "total"

def test_plan_limits_and_negative_amounts():
    """Test plan limits and negative amounts"""
    checker = ContributionComplianceChecker(warning_ratio=0.9)

    over_match = checker.check_batch([(0, contribution(match=60000))], plan_match_limit=50000)[0]
    over_plan = checker.check_batch([(0, contribution(pre_tax=1100000))], plan_employee_limit=1000000)[0]
    negative = checker.check_batch([(0, contribution(roth=-500))])[0]

    assert codes(over_match) == ["EXCEEDS_PLAN_MATCH_LIMIT"]
    assert codes(over_plan) == ["EXCEEDS_EMPLOYEE_ELECTIVE_LIMIT"]
    assert codes(negative) == ["NEGATIVE_AMOUNT"]
    assert negative.errors[0].field == "employeeRoth"

def test_unknown_year_uses_latest_limits():
    """Test years without configured limits fall back to the latest year"""
    assert get_irs_limits(2030) == IRS_LIMITS[max(IRS_LIMITS)]
    assert get_irs_limits(2024).elective_deferral == 2300000
