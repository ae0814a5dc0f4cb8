import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional, Tuple

from config import settings
from ..models import ValidationResult, YtdTotals
from .expressions import to_decimal
from .transformations import calculate_age, parse_date

logger = logging.getLogger(__name__)

class IrsLimits(NamedTuple):
    elective_deferral: int
    catch_up: int
    total_annual_additions: int
    highly_compensated_threshold: int

# Amounts in cents
IRS_LIMITS: Dict[int, IrsLimits] = {
    2024: IrsLimits(2300000, 750000, 6900000, 15500000),
    2025: IrsLimits(2350000, 750000, 7000000, 16000000),
    2026: IrsLimits(2350000, 750000, 7000000, 16000000),
}

CATCH_UP_AGE = 50

EMPLOYEE_KEYS = ("employeeId", "employeeNumber", "employee_id", "employee_number")
ELECTIVE_FIELDS = ("employeePreTax", "employeeRoth")
EMPLOYER_FIELDS = ("employerMatch", "employerNonMatch")

def get_irs_limits(year: int) -> IrsLimits:
    """Limits for a plan year, falling back to the most recent known year"""
    if year in IRS_LIMITS:
        return IRS_LIMITS[year]
    latest = max(IRS_LIMITS)
    logger.warning(f"No IRS limits configured for {year}; using {latest}")
    return IRS_LIMITS[latest]

def _cents(value: Any) -> int:
    number = to_decimal(value)
    return int(number) if number is not None else 0

def _employee_key(record: Mapping[str, Any]) -> Optional[str]:
    for key in EMPLOYEE_KEYS:
        if record.get(key) not in (None, ""):
            return str(record[key])
    return None

class ContributionComplianceChecker:
    """Batch-level IRS and plan limit checks for contribution records.

    Records are checked in batch order with running year-to-date totals per
    employee and plan year, so the third contribution for an employee is
    judged against the first two plus any caller-supplied baseline.
    """

    def __init__(self, warning_ratio: Optional[float] = None):
        self.warning_ratio = settings.compliance_warning_ratio if warning_ratio is None else warning_ratio

    def check_batch(self, records: Iterable[Tuple[int, Mapping[str, Any]]],
                    baselines: Optional[Dict[str, YtdTotals]] = None,
                    plan_employee_limit: Optional[int] = None,
                    plan_match_limit: Optional[int] = None) -> Dict[int, ValidationResult]:
        """Check (batch index, contribution record) pairs, returning results keyed by batch index"""
        baselines = baselines or {}
        running: Dict[Tuple[Optional[str], int], YtdTotals] = {}
        results: Dict[int, ValidationResult] = {}

        for index, record in records:
            payroll_date = parse_date(record.get("payrollDate"))
            year = payroll_date.year if payroll_date else datetime.now().year
            employee = _employee_key(record)

            totals = YtdTotals()
            if employee is not None:
                key = (employee, year)
                if key not in running:
                    running[key] = baselines.get(employee, YtdTotals()).model_copy()
                totals = running[key]

            results[index] = self.check_contribution(record, year, totals, plan_employee_limit, plan_match_limit)

            totals.employee_elective += sum(_cents(record.get(f)) for f in ELECTIVE_FIELDS)
            totals.employer_contributions += sum(_cents(record.get(f)) for f in EMPLOYER_FIELDS)

        failed = sum(1 for result in results.values() if not result.valid)
        logger.info(f"Compliance check completed: {failed}/{len(results)} contributions over limits")
        return results

    def check_contribution(self, record: Mapping[str, Any], year: int, ytd: YtdTotals,
                           plan_employee_limit: Optional[int] = None,
                           plan_match_limit: Optional[int] = None) -> ValidationResult:
        """Check one contribution against limits given the totals before it"""
        result = ValidationResult()
        limits = get_irs_limits(year)

        proposed_elective = sum(_cents(record.get(f)) for f in ELECTIVE_FIELDS)
        proposed_employer = sum(_cents(record.get(f)) for f in EMPLOYER_FIELDS)

        employee_limit = limits.elective_deferral
        birth_date = parse_date(record.get("dateOfBirth"))
        if birth_date and calculate_age(birth_date, datetime(year, 12, 31)) >= CATCH_UP_AGE:
            employee_limit += limits.catch_up
        if plan_employee_limit:
            employee_limit = min(employee_limit, plan_employee_limit)

        # 402(g) elective deferrals
        new_elective = ytd.employee_elective + proposed_elective
        if new_elective > employee_limit:
            result.add_error(
                "employeePreTax", "EXCEEDS_EMPLOYEE_ELECTIVE_LIMIT",
                f"Contribution would exceed annual employee elective deferral limit of {employee_limit} "
                f"(year to date {ytd.employee_elective}, proposed {proposed_elective})",
                proposed_elective,
            )
        elif new_elective > employee_limit * self.warning_ratio:
            result.add_warning(
                "employeePreTax", "APPROACHING_EMPLOYEE_LIMIT",
                f"Employee is approaching annual elective deferral limit of {employee_limit} "
                f"(year to date {new_elective})",
                proposed_elective,
            )

        # 415 annual additions
        new_total = ytd.total_additions + proposed_elective + proposed_employer
        if new_total > limits.total_annual_additions:
            result.add_error(
                "total", "EXCEEDS_415_LIMIT",
                f"Contribution would exceed IRC Section 415 annual additions limit of "
                f"{limits.total_annual_additions} (year to date {ytd.total_additions})",
                proposed_elective + proposed_employer,
            )

        match = _cents(record.get("employerMatch"))
        if plan_match_limit and match > plan_match_limit:
            result.add_error(
                "employerMatch", "EXCEEDS_PLAN_MATCH_LIMIT",
                f"Employer match exceeds plan limit of {plan_match_limit}",
                match,
            )

        for field in ELECTIVE_FIELDS + EMPLOYER_FIELDS:
            amount = to_decimal(record.get(field))
            if amount is not None and amount < 0:
                result.add_error(field, "NEGATIVE_AMOUNT", f"{field} cannot be negative", record.get(field))

        return result
