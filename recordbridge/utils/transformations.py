import calendar
import logging
import math
import numbers
import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd
import phonenumbers
from email_validator import validate_email, EmailNotValidError
from pydantic.alias_generators import to_snake

from .values import contains_strict, is_missing, strict_equals

logger = logging.getLogger(__name__)

class TransformationType(Enum):
    STRING = "string"
    NUMERIC = "numeric"
    DATE = "date"
    LOOKUP = "lookup"
    VALIDATION = "validation"

class TransformationError(Exception):
    """Raised for unknown transformations or unusable parameters"""
    pass

Params = Dict[str, Any]

# ---------------------------------------------------------------------------
# String transformations
# ---------------------------------------------------------------------------

def _digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value))

def _format_ssn(value: Any, params: Params) -> Any:
    """Format a 9-digit SSN as XXX-XX-XXXX, leaving anything else unchanged"""
    digits = _digits(value)
    if len(digits) != 9:
        return value
    return f"{digits[:3]}-{digits[3:5]}-{digits[5:]}"

def _title_case(value: Any, params: Params) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in str(value).lower().split(" "))

def _concatenate(value: Any, params: Params) -> Optional[str]:
    if not isinstance(value, (list, tuple)):
        return None
    separator = params.get("separator", " ")
    return separator.join(str(v) for v in value if not is_missing(v))

def _split(value: Any, params: Params) -> Any:
    parts = str(value).split(params.get("delimiter", " "))
    index = params.get("index")
    if index is None:
        return parts
    return parts[int(index)] if -len(parts) <= int(index) < len(parts) else None

def _substring(value: Any, params: Params) -> str:
    start = int(params.get("start", 0))
    end = params.get("end")
    return str(value)[start:None if end is None else int(end)]

def _pad_left(value: Any, params: Params) -> str:
    return str(value).rjust(int(params.get("length", 0)), str(params.get("char", "0"))[:1] or "0")

def _pad_right(value: Any, params: Params) -> str:
    return str(value).ljust(int(params.get("length", 0)), str(params.get("char", "0"))[:1] or "0")

def _replace(value: Any, params: Params) -> Any:
    search = params.get("pattern", params.get("search"))
    if not search:
        return value
    replacement = params.get("replacement", "")
    count = -1 if params.get("global", True) else 1
    return str(value).replace(search, replacement, count)

def _mask(value: Any, params: Params) -> str:
    text = str(value)
    visible = int(params.get("visible_chars", params.get("visible", 4)))
    mask_char = params.get("mask_char", params.get("char", "*"))
    if len(text) <= visible:
        return text
    hidden = mask_char * (len(text) - visible)
    if params.get("position", "end") == "start":
        return text[:visible] + hidden
    return hidden + text[len(text) - visible:]

def _format_phone_number(value: Any, params: Params) -> Any:
    digits = _digits(value)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    return value

def _format_ein(value: Any, params: Params) -> Any:
    digits = _digits(value)
    if len(digits) != 9:
        return value
    return f"{digits[:2]}-{digits[2:]}"

# ---------------------------------------------------------------------------
# Numeric transformations
# ---------------------------------------------------------------------------

def _number(value: Any) -> Optional[float]:
    """Coerce to a number, None when not numeric"""
    if isinstance(value, bool) or is_missing(value):
        return None
    if isinstance(value, numbers.Number):
        return value
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return None if math.isnan(number) else number

def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)

def _numeric(fn: Callable[[float, Params], Any]) -> Callable[[Any, Params], Any]:
    """Wrap a function of a number so non-numeric input yields None"""
    def wrapper(value: Any, params: Params) -> Any:
        number = _number(value)
        return None if number is None else fn(number, params)
    return wrapper

def _round(number: float, params: Params) -> float:
    factor = 10 ** int(params.get("decimals", 0))
    return _round_half_up(number * factor) / factor

def _divide(number: float, params: Params) -> Optional[float]:
    divisor = params.get("divisor", 1)
    if divisor == 0:
        return None
    return number / divisor

def _clamp(number: float, params: Params) -> float:
    low = params.get("min", -math.inf)
    high = params.get("max", math.inf)
    return min(max(number, low), high)

def _parse_number(value: Any, params: Params) -> Optional[float]:
    """Parse numbers such as "$1,234.50", stripping currency symbols and separators"""
    if isinstance(value, numbers.Number) and not isinstance(value, bool):
        return value
    return _number(re.sub(r"[$,\s]", "", str(value)))

def _format_currency(number: float, params: Params) -> str:
    symbol = params.get("symbol", "$")
    sign = "-" if number < 0 else ""
    return f"{sign}{symbol}{abs(number):,.2f}"

# ---------------------------------------------------------------------------
# Date transformations
# ---------------------------------------------------------------------------

_US_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$")
_COMPACT_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_DATE_TOKEN_RE = re.compile(r"YYYY|YY|MM|M|DD|D|HH|H|mm|m|ss|s")

def parse_date(value: Any) -> Optional[datetime]:
    """Parse ISO, MM/DD/YYYY, MM-DD-YYYY and YYYYMMDD dates, falling back to pandas"""
    if is_missing(value):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = _parse_date_string(str(value).strip())
        if parsed is None:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

def _parse_date_string(text: str) -> Optional[datetime]:
    if not text:
        return None
    for pattern in (_COMPACT_DATE_RE, _US_DATE_RE):
        match = pattern.match(text)
        if match:
            first, second, third = (int(group) for group in match.groups())
            year, month, day = (first, second, third) if pattern is _COMPACT_DATE_RE else (third, first, second)
            try:
                return datetime(year, month, day)
            except ValueError:
                return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        timestamp = pd.to_datetime(text, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(timestamp):
        return None
    return timestamp.to_pydatetime()

def _iso_timestamp(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"

def _dated(fn: Callable[[datetime, Params], Any]) -> Callable[[Any, Params], Any]:
    """Wrap a function of a datetime so unparseable input yields None"""
    def wrapper(value: Any, params: Params) -> Any:
        parsed = parse_date(value)
        return None if parsed is None else fn(parsed, params)
    return wrapper

def _as_of(params: Params, *keys: str) -> Optional[datetime]:
    for key in keys:
        if params.get(key) is not None:
            return parse_date(params[key])
    return datetime.now()

def _format_date_custom(moment: datetime, params: Params) -> str:
    tokens = {
        "YYYY": f"{moment.year:04d}",
        "YY": f"{moment.year % 100:02d}",
        "MM": f"{moment.month:02d}",
        "M": str(moment.month),
        "DD": f"{moment.day:02d}",
        "D": str(moment.day),
        "HH": f"{moment.hour:02d}",
        "H": str(moment.hour),
        "mm": f"{moment.minute:02d}",
        "m": str(moment.minute),
        "ss": f"{moment.second:02d}",
        "s": str(moment.second),
    }
    return _DATE_TOKEN_RE.sub(lambda match: tokens[match.group(0)], params.get("format", "YYYY-MM-DD"))

def _shift(moment: datetime, **offset: int) -> str:
    return (pd.Timestamp(moment) + pd.DateOffset(**offset)).date().isoformat()

def _end_of_month(moment: datetime, params: Params) -> str:
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    return date(moment.year, moment.month, last_day).isoformat()

def calculate_age(birth_date: datetime, as_of: datetime) -> int:
    age = as_of.year - birth_date.year
    if (as_of.month, as_of.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age

def _calculate_age(moment: datetime, params: Params) -> Optional[int]:
    as_of = _as_of(params, "as_of_date")
    return None if as_of is None else calculate_age(moment, as_of)

def _is_catch_up_eligible(moment: datetime, params: Params) -> Optional[bool]:
    age = _calculate_age(moment, params)
    return None if age is None else age >= params.get("threshold", 50)

def _date_diff(moment: datetime, params: Params) -> Optional[int]:
    end = _as_of(params, "end_date", "other_date")
    if end is None:
        return None
    unit = params.get("unit", "days")
    if unit == "days":
        return math.floor((end - moment).total_seconds() / 86400)
    if unit == "weeks":
        return math.floor((end - moment).total_seconds() / (86400 * 7))
    if unit == "months":
        return (end.year - moment.year) * 12 + (end.month - moment.month)
    if unit == "years":
        return end.year - moment.year
    return None

def _to_timestamp(moment: datetime, params: Params) -> int:
    return int(moment.replace(tzinfo=timezone.utc).timestamp() * 1000)

def _from_timestamp(value: Any, params: Params) -> Optional[str]:
    number = _number(value)
    if number is None:
        return None
    return _iso_timestamp(datetime.fromtimestamp(number / 1000, tz=timezone.utc))

# ---------------------------------------------------------------------------
# Lookup transformations
# ---------------------------------------------------------------------------

def lookup_key(value: Any) -> str:
    """Key used for inline lookup tables: the stringified value"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)

def _first_present(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None

def _lookup_value(value: Any, params: Params) -> Any:
    default = params.get("default_value")
    table = params.get("lookup_table")
    if is_missing(value) or not isinstance(table, dict):
        return default
    return _first_present(table.get(lookup_key(value)), default)

def _map_code(value: Any, params: Params) -> Any:
    default = params.get("default_value")
    if is_missing(value):
        return default
    mapping = params.get("mapping") or params.get("code_map")
    if not isinstance(mapping, dict):
        return _first_present(default, value)
    return _first_present(mapping.get(str(value).upper()), default, value)

def _default_if_empty(value: Any, params: Params) -> Any:
    if is_missing(value) or (isinstance(value, str) and not value.strip()) or value == []:
        return params.get("default_value")
    return value

def _coalesce(value: Any, params: Params) -> Any:
    candidates = value if isinstance(value, (list, tuple)) else params.get("values", [value])
    for candidate in candidates:
        if is_missing(candidate) or (isinstance(candidate, str) and not candidate.strip()):
            continue
        return candidate
    return None

def _first_non_null(value: Any, params: Params) -> Any:
    candidates = value if isinstance(value, (list, tuple)) else [value]
    return _first_present(*(None if is_missing(c) else c for c in candidates))

_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": strict_equals,
    "not_equals": lambda a, b: not strict_equals(a, b),
    "greater_than": lambda a, b: _number(a) is not None and _number(b) is not None and _number(a) > _number(b),
    "less_than": lambda a, b: _number(a) is not None and _number(b) is not None and _number(a) < _number(b),
    "greater_than_or_equals": lambda a, b: _number(a) is not None and _number(b) is not None and _number(a) >= _number(b),
    "less_than_or_equals": lambda a, b: _number(a) is not None and _number(b) is not None and _number(a) <= _number(b),
    "contains": lambda a, b: str(b) in str(a),
    "starts_with": lambda a, b: str(a).startswith(str(b)),
    "ends_with": lambda a, b: str(a).endswith(str(b)),
    "is_null": lambda a, b: is_missing(a),
    "is_not_null": lambda a, b: not is_missing(a),
    "is_empty": lambda a, b: is_missing(a) or a == "" or a == [],
    "is_not_empty": lambda a, b: not (is_missing(a) or a == "" or a == []),
}

def _if_then_else(value: Any, params: Params) -> Any:
    """`condition` switches the comparison on; `operator` defaults to equals"""
    if not params.get("condition"):
        return value
    operator = params.get("operator") or "equals"
    comparison = _COMPARISONS.get(operator)
    if comparison is None:
        raise TransformationError(f"Unknown comparison operator: {operator}")
    matched = comparison(value, params.get("compare_value"))
    return params.get("then") if matched else params.get("else")

def _switch_case(value: Any, params: Params) -> Any:
    cases = params.get("cases")
    default = params.get("default_value")
    if not isinstance(cases, dict):
        return _first_present(default, value)
    return _first_present(cases.get(lookup_key(value)), default, value)

def _nvl(value: Any, params: Params) -> Any:
    return params.get("replacement") if is_missing(value) else value

def _nvl2(value: Any, params: Params) -> Any:
    if is_missing(value):
        return params.get("if_null")
    return _first_present(params.get("if_not_null"), value)

def _decode(value: Any, params: Params) -> Any:
    for pair in params.get("pairs") or []:
        search, result = pair
        if strict_equals(value, search):
            return result
    return _first_present(params.get("default_value"), value)

CONTRIBUTION_TYPE_CODES = {
    "PRE_TAX": "1", "PRETAX": "1", "TRADITIONAL": "1",
    "ROTH": "2", "ROTH_401K": "2",
    "AFTER_TAX": "3", "AFTERTAX": "3",
    "CATCH_UP": "4", "CATCHUP": "4",
    "EMPLOYER_MATCH": "5", "MATCH": "5",
    "EMPLOYER_NON_MATCH": "6", "PROFIT_SHARING": "6",
    "LOAN_REPAYMENT": "7", "LOAN": "7",
}

EMPLOYEE_STATUS_CODES = {
    "ACTIVE": "A", "A": "A",
    "TERMINATED": "T", "T": "T",
    "LEAVE": "L", "ON_LEAVE": "L", "L": "L",
    "DECEASED": "D", "D": "D",
    "RETIRED": "R", "R": "R",
    "SUSPENDED": "S", "S": "S",
}

PAY_FREQUENCY_CODES = {
    "WEEKLY": "W", "W": "W",
    "BI_WEEKLY": "B", "BIWEEKLY": "B", "B": "B",
    "SEMI_MONTHLY": "S", "SEMIMONTHLY": "S", "S": "S",
    "MONTHLY": "M", "M": "M",
    "QUARTERLY": "Q", "Q": "Q",
    "ANNUAL": "A", "ANNUALLY": "A", "A": "A",
}

def _code_mapper(codes: Dict[str, str]) -> Callable[[Any, Params], Any]:
    def mapper(value: Any, params: Params) -> Any:
        mapping = params.get("mapping") or codes
        key = re.sub(r"[\s-]", "_", str(value).upper())
        return _first_present(mapping.get(key), params.get("default_value"), value)
    return mapper

# ---------------------------------------------------------------------------
# Validation transformations
# ---------------------------------------------------------------------------

EIN_PREFIXES = frozenset("""
01 02 03 04 05 06 10 11 12 13 14 15 16 20 21 22 23 24 25 26 27 30 31 32 33 34 35 36 37 38
39 40 41 42 43 44 45 46 47 48 50 51 52 53 54 55 56 57 58 59 60 61 62 63 64 65 66 67 68 71
72 73 74 75 76 77 80 81 82 83 84 85 86 87 88 90 91 92 93 94 95 98 99
""".split())

def _validate_ssn(value: Any, params: Params) -> bool:
    digits = _digits(value)
    if len(digits) != 9:
        return False
    area, group, serial = int(digits[:3]), int(digits[3:5]), int(digits[5:])
    return area not in (0, 666) and area < 900 and group != 0 and serial != 0

def _validate_ein(value: Any, params: Params) -> bool:
    digits = _digits(value)
    return len(digits) == 9 and digits[:2] in EIN_PREFIXES

def _validate_email(value: Any, params: Params) -> bool:
    try:
        validate_email(str(value), check_deliverability=False)
        return True
    except EmailNotValidError:
        return False

def _validate_phone(value: Any, params: Params) -> bool:
    try:
        number = phonenumbers.parse(str(value), params.get("region", "US"))
    except phonenumbers.NumberParseException:
        return False
    return phonenumbers.is_valid_number(number)

def _validate_range(value: Any, params: Params) -> bool:
    number = _number(value)
    if number is None:
        return False
    if params.get("min") is not None and number < params["min"]:
        return False
    if params.get("max") is not None and number > params["max"]:
        return False
    return True

def _validate_not_empty(value: Any, params: Params) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True

def _validate_length(value: Any, params: Params) -> bool:
    length = len(str(value))
    if params.get("exact") is not None:
        return length == params["exact"]
    if params.get("min") is not None and length < params["min"]:
        return False
    if params.get("max") is not None and length > params["max"]:
        return False
    return True

def _validate_pattern(value: Any, params: Params) -> bool:
    pattern = params.get("pattern")
    if not pattern:
        return False
    try:
        return re.search(pattern, str(value)) is not None
    except re.error:
        return False

def _validate_routing_number(value: Any, params: Params) -> bool:
    digits = [int(d) for d in _digits(value)]
    if len(digits) != 9:
        return False
    checksum = (
        3 * (digits[0] + digits[3] + digits[6])
        + 7 * (digits[1] + digits[4] + digits[7])
        + (digits[2] + digits[5] + digits[8])
    )
    return checksum % 10 == 0

def _validating(fn: Callable[[Any, Params], bool]) -> Callable[[Any, Params], bool]:
    """Missing values fail every validation check"""
    def wrapper(value: Any, params: Params) -> bool:
        return False if is_missing(value) else fn(value, params)
    return wrapper

def _compare_to_now(value: Any, future: bool) -> bool:
    parsed = parse_date(value)
    if parsed is None:
        return False
    return parsed > datetime.now() if future else parsed < datetime.now()

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _null_safe(fn: Callable[[Any, Params], Any]) -> Callable[[Any, Params], Any]:
    """Missing input passes through as None"""
    def wrapper(value: Any, params: Params) -> Any:
        return None if is_missing(value) else fn(value, params)
    return wrapper

class TransformationRegistry:
    """Fixed catalog of named transformation functions.

    Every entry is a ``function(value, params)`` plus its category and a
    description. Parameter keys may be given in camelCase or snake_case.
    """

    def __init__(self, extra: Optional[Dict[str, Dict[str, Any]]] = None):
        self.transformations = self._initialize_transformations()
        for name, entry in (extra or {}).items():
            self.transformations[name] = entry

    def _initialize_transformations(self) -> Dict[str, Dict[str, Any]]:
        """Initialize built-in transformation functions"""
        string, numeric, dated = TransformationType.STRING, TransformationType.NUMERIC, TransformationType.DATE
        lookup, validation = TransformationType.LOOKUP, TransformationType.VALIDATION

        catalog: List[Tuple[str, Callable, TransformationType, str]] = [
            # String transformations
            ("format_ssn", _null_safe(_format_ssn), string, "Format a 9-digit SSN as XXX-XX-XXXX"),
            ("remove_dashes", _null_safe(lambda v, p: str(v).replace("-", "")), string, "Remove all dashes"),
            ("trim_whitespace", _null_safe(lambda v, p: str(v).strip()), string, "Remove leading and trailing whitespace"),
            ("uppercase", _null_safe(lambda v, p: str(v).upper()), string, "Convert text to uppercase"),
            ("lowercase", _null_safe(lambda v, p: str(v).lower()), string, "Convert text to lowercase"),
            ("title_case", _null_safe(_title_case), string, "Convert text to title case"),
            ("concatenate", _concatenate, string, "Join a list of values with a separator"),
            ("split", _null_safe(_split), string, "Split text by a delimiter, optionally picking one part"),
            ("substring", _null_safe(_substring), string, "Extract part of a string"),
            ("pad_left", _null_safe(_pad_left), string, "Pad on the left to a target length"),
            ("pad_right", _null_safe(_pad_right), string, "Pad on the right to a target length"),
            ("replace", _null_safe(_replace), string, "Replace occurrences of a substring"),
            ("mask", _null_safe(_mask), string, "Mask all but the visible characters"),
            ("extract_digits", _null_safe(lambda v, p: _digits(v)), string, "Keep only digits"),
            ("extract_letters", _null_safe(lambda v, p: re.sub(r"[^a-zA-Z]", "", str(v))), string, "Keep only letters"),
            ("format_phone_number", _null_safe(_format_phone_number), string, "Format a US phone number"),
            ("format_ein", _null_safe(_format_ein), string, "Format a 9-digit EIN as XX-XXXXXXX"),

            # Numeric transformations
            ("convert_to_cents", _numeric(lambda n, p: _round_half_up(n * 100)), numeric, "Convert dollars to integer cents"),
            ("convert_to_dollars", _numeric(lambda n, p: n / 100), numeric, "Convert cents to dollars"),
            ("round_to_cents", _numeric(lambda n, p: _round_half_up(n * 100) / 100), numeric, "Round to two decimal places"),
            ("convert_to_decimal", _numeric(lambda n, p: n / 100), numeric, "Convert a percentage to a decimal"),
            ("convert_from_decimal", _numeric(lambda n, p: n * 100), numeric, "Convert a decimal to a percentage"),
            ("convert_to_basis_points", _numeric(lambda n, p: _round_half_up(n * 100)), numeric, "Convert a percentage to basis points"),
            ("convert_from_basis_points", _numeric(lambda n, p: n / 100), numeric, "Convert basis points to a percentage"),
            ("abs", _numeric(lambda n, p: abs(n)), numeric, "Absolute value"),
            ("round", _numeric(_round), numeric, "Round to the given number of decimals"),
            ("floor", _numeric(lambda n, p: math.floor(n)), numeric, "Round down"),
            ("ceil", _numeric(lambda n, p: math.ceil(n)), numeric, "Round up"),
            ("multiply", _numeric(lambda n, p: n * p.get("factor", 1)), numeric, "Multiply by a factor"),
            ("divide", _numeric(_divide), numeric, "Divide by a divisor (null when dividing by zero)"),
            ("add", _numeric(lambda n, p: n + p.get("value", 0)), numeric, "Add a constant"),
            ("subtract", _numeric(lambda n, p: n - p.get("value", 0)), numeric, "Subtract a constant"),
            ("clamp", _numeric(_clamp), numeric, "Constrain to a min/max range"),
            ("parse_number", _null_safe(_parse_number), numeric, "Parse a number, ignoring $ , and whitespace"),
            ("format_currency", _numeric(_format_currency), numeric, "Format as currency with two decimal places"),
            ("to_integer", _numeric(lambda n, p: math.trunc(n)), numeric, "Truncate to an integer"),

            # Date transformations
            ("format_date_iso", _dated(lambda d, p: d.date().isoformat()), dated, "Format as YYYY-MM-DD"),
            ("format_date_us", _dated(lambda d, p: d.strftime("%m/%d/%Y")), dated, "Format as MM/DD/YYYY"),
            ("format_date_custom", _dated(_format_date_custom), dated, "Format with YYYY/YY/MM/M/DD/D/HH/mm/ss tokens"),
            ("parse_date", _dated(lambda d, p: _iso_timestamp(d)), dated, "Parse to an ISO 8601 timestamp"),
            ("add_days", _dated(lambda d, p: _shift(d, days=int(p.get("days", 0)))), dated, "Add days"),
            ("subtract_days", _dated(lambda d, p: _shift(d, days=-int(p.get("days", 0)))), dated, "Subtract days"),
            ("add_months", _dated(lambda d, p: _shift(d, months=int(p.get("months", 0)))), dated, "Add months, clamping to month end"),
            ("add_years", _dated(lambda d, p: _shift(d, years=int(p.get("years", 0)))), dated, "Add years"),
            ("start_of_month", _dated(lambda d, p: date(d.year, d.month, 1).isoformat()), dated, "First day of the month"),
            ("end_of_month", _dated(_end_of_month), dated, "Last day of the month"),
            ("start_of_year", _dated(lambda d, p: f"{d.year:04d}-01-01"), dated, "First day of the year"),
            ("end_of_year", _dated(lambda d, p: f"{d.year:04d}-12-31"), dated, "Last day of the year"),
            ("get_year", _dated(lambda d, p: d.year), dated, "Year component"),
            ("get_month", _dated(lambda d, p: d.month), dated, "Month component (1-12)"),
            ("get_day", _dated(lambda d, p: d.day), dated, "Day of month"),
            ("get_day_of_week", _dated(lambda d, p: (d.weekday() + 1) % 7), dated, "Day of week (0 = Sunday)"),
            ("get_quarter", _dated(lambda d, p: (d.month - 1) // 3 + 1), dated, "Calendar quarter"),
            ("calculate_age", _dated(_calculate_age), dated, "Age in whole years as of a date (default today)"),
            ("is_catch_up_eligible", _dated(_is_catch_up_eligible), dated, "Age at or above the catch-up threshold (default 50)"),
            ("date_diff", _dated(_date_diff), dated, "Difference to another date in days/weeks/months/years"),
            ("to_timestamp", _dated(_to_timestamp), dated, "Milliseconds since the epoch"),
            ("from_timestamp", _from_timestamp, dated, "ISO timestamp from milliseconds since the epoch"),

            # Lookup transformations
            ("lookup_value", _lookup_value, lookup, "Look the value up in an inline table"),
            ("map_code", _map_code, lookup, "Map an upper-cased code through a table"),
            ("default_if_null", lambda v, p: p.get("default_value") if is_missing(v) else v, lookup, "Default when null"),
            ("default_if_empty", _default_if_empty, lookup, "Default when null or blank"),
            ("coalesce", _coalesce, lookup, "First non-null, non-blank value"),
            ("if_then_else", _if_then_else, lookup, "Choose between two values by comparison"),
            ("switch_case", _switch_case, lookup, "Map the value through a case table"),
            ("first_non_null", _first_non_null, lookup, "First non-null value"),
            ("nvl", _nvl, lookup, "Replacement when null"),
            ("nvl2", _nvl2, lookup, "One value when present, another when null"),
            ("decode", _decode, lookup, "Map through search/result pairs"),
            ("map_contribution_type", _null_safe(_code_mapper(CONTRIBUTION_TYPE_CODES)), lookup, "Standard contribution type code"),
            ("map_employee_status", _null_safe(_code_mapper(EMPLOYEE_STATUS_CODES)), lookup, "Standard employee status code"),
            ("map_pay_frequency", _null_safe(_code_mapper(PAY_FREQUENCY_CODES)), lookup, "Standard pay frequency code"),

            # Validation transformations
            ("validate_ssn", _validating(_validate_ssn), validation, "Valid SSN structure"),
            ("validate_ein", _validating(_validate_ein), validation, "Valid EIN with an IRS prefix"),
            ("validate_email", _validating(_validate_email), validation, "Valid email address"),
            ("validate_phone", _validating(_validate_phone), validation, "Valid phone number"),
            ("validate_positive", _validating(lambda v, p: (_number(v) or 0) > 0), validation, "Greater than zero"),
            ("validate_non_negative", _validating(lambda v, p: _number(v) is not None and _number(v) >= 0), validation, "Zero or more"),
            ("validate_range", _validating(_validate_range), validation, "Within min/max"),
            ("validate_not_empty", _validating(_validate_not_empty), validation, "Not blank"),
            ("validate_length", _validating(_validate_length), validation, "Length within bounds"),
            ("validate_pattern", _validating(_validate_pattern), validation, "Matches a regular expression"),
            ("validate_in", _validating(lambda v, p: contains_strict(p.get("values") or [], v)), validation, "One of the allowed values"),
            ("validate_not_in", lambda v, p: is_missing(v) or not contains_strict(p.get("values") or [], v), validation, "None of the listed values"),
            ("validate_date", _validating(lambda v, p: parse_date(v) is not None), validation, "Parseable date"),
            ("validate_future_date", _validating(lambda v, p: _compare_to_now(v, future=True)), validation, "Date in the future"),
            ("validate_past_date", _validating(lambda v, p: _compare_to_now(v, future=False)), validation, "Date in the past"),
            ("validate_zip_code", _validating(lambda v, p: re.fullmatch(r"\d{5}(-\d{4})?", re.sub(r"\s", "", str(v))) is not None), validation, "US ZIP or ZIP+4"),
            ("validate_routing_number", _validating(_validate_routing_number), validation, "ABA routing number checksum"),
            ("validate_account_number", _validating(lambda v, p: 4 <= len(_digits(v)) <= 17), validation, "4 to 17 digit account number"),
        ]

        return {
            name: {"function": function, "type": kind, "description": description}
            for name, function, kind, description in catalog
        }

    def has(self, name: str) -> bool:
        return name in self.transformations

    def transform(self, name: str, value: Any, params: Optional[Dict[str, Any]] = None) -> Any:
        """Apply a named transformation, raising TransformationError if it is unknown"""
        entry = self.transformations.get(name)
        if entry is None:
            raise TransformationError(f"Unknown transformation: {name}")
        normalized = {to_snake(key): param for key, param in (params or {}).items()}
        return entry["function"](value, normalized)

    def chain(self, value: Any, steps: List[Tuple[str, Optional[Dict[str, Any]]]]) -> Any:
        """Apply several transformations in order"""
        for name, params in steps:
            value = self.transform(name, value, params)
        return value

    def test_transformation(self, name: str, value: Any, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a transformation and report the outcome instead of raising"""
        try:
            return {"success": True, "result": self.transform(name, value, params)}
        except Exception as e:
            logger.debug(f"Transformation test '{name}' failed: {e}")
            return {"success": False, "error": str(e)}

    def get_available_transformations(self, kind: Optional[TransformationType] = None) -> Dict[str, Any]:
        """List transformations with their category and description"""
        return {
            name: {"type": entry["type"].value, "description": entry["description"]}
            for name, entry in self.transformations.items()
            if kind is None or entry["type"] == kind
        }
