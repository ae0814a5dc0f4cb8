import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..models import (
    RuleLogic, RuleOperator, ValidationResult, ValidationRule, ValidationSeverity,
)
from .expressions import as_text, to_decimal
from .values import contains_strict, is_blank, is_missing, strict_equals

logger = logging.getLogger(__name__)

_TEMPLATE_FIELD_RE = re.compile(r"\{(\w+)\}")

def select_applicable_rules(rules: Iterable[ValidationRule], mapping_type: str,
                            tenant_id: Optional[str]) -> List[ValidationRule]:
    """Active global rules plus the tenant's own rules for a mapping type.

    Global and tenant rules are concatenated, never merged: a tenant rule on
    the same field as a global rule is evaluated in addition to it.
    """
    applicable = [
        rule for rule in rules
        if rule.is_active
        and rule.applies_to_type(mapping_type)
        and (rule.is_global or rule.tenant_id == tenant_id)
    ]
    return [r for r in applicable if r.is_global] + [r for r in applicable if not r.is_global]

def render_message(template: str, rule: ValidationRule, value: Any) -> str:
    """Substitute {field} {value} {min} {max} {pattern} {values} {expected} placeholders"""
    logic = rule.rule_logic
    context = {
        "field": rule.target_field,
        "value": value,
        "min": logic.min,
        "max": logic.max,
        "pattern": logic.pattern,
        "values": logic.values,
        "expected": logic.value,
        "rule": rule.name,
    }
    return _TEMPLATE_FIELD_RE.sub(
        lambda match: str(context[match.group(1)]) if match.group(1) in context else match.group(0),
        template,
    )

class RuleValidator:
    """Evaluates operator-based validation rules against destination records"""

    def __init__(self):
        self.operators: Dict[RuleOperator, Callable[[Any, RuleLogic], bool]] = {
            RuleOperator.EQUALS: self._check_equals,
            RuleOperator.NOT_EQUALS: lambda value, logic: not self._check_equals(value, logic),
            RuleOperator.GREATER_THAN: self._check_greater_than,
            RuleOperator.LESS_THAN: self._check_less_than,
            RuleOperator.BETWEEN: self._check_between,
            RuleOperator.IN: self._check_in,
            RuleOperator.NOT_IN: self._check_not_in,
            RuleOperator.MATCHES: self._check_matches,
            RuleOperator.NOT_EMPTY: lambda value, logic: not is_blank(value),
        }

    def _check_equals(self, value: Any, logic: RuleLogic) -> bool:
        """Value equals the expected literal, without type coercion"""
        if is_missing(value):
            return logic.value is None
        return strict_equals(value, logic.value)

    def _check_greater_than(self, value: Any, logic: RuleLogic) -> bool:
        number, threshold = to_decimal(value), to_decimal(logic.value)
        return number is not None and threshold is not None and number > threshold

    def _check_less_than(self, value: Any, logic: RuleLogic) -> bool:
        number, threshold = to_decimal(value), to_decimal(logic.value)
        return number is not None and threshold is not None and number < threshold

    def _check_between(self, value: Any, logic: RuleLogic) -> bool:
        """Inclusive numeric range"""
        number = to_decimal(value)
        if number is None or logic.min is None or logic.max is None:
            return False
        return to_decimal(logic.min) <= number <= to_decimal(logic.max)

    def _check_in(self, value: Any, logic: RuleLogic) -> bool:
        return logic.values is not None and contains_strict(logic.values, value)

    def _check_not_in(self, value: Any, logic: RuleLogic) -> bool:
        return logic.values is None or not contains_strict(logic.values, value)

    def _check_matches(self, value: Any, logic: RuleLogic) -> bool:
        if is_missing(value) or not logic.pattern:
            return False
        try:
            return re.search(logic.pattern, as_text(value)) is not None
        except re.error as e:
            logger.warning(f"Invalid pattern {logic.pattern!r} treated as a failed match: {e}")
            return False

    def check_rule(self, record: Mapping[str, Any], rule: ValidationRule) -> bool:
        """True when the record satisfies the rule"""
        value = record.get(rule.target_field)
        check = self.operators.get(rule.rule_logic.operator)
        if check is None:
            return True
        try:
            return check(value, rule.rule_logic)
        except Exception as e:
            logger.warning(f"Rule '{rule.name}' could not be evaluated for field '{rule.target_field}': {e}")
            return False

    def validate_record(self, record: Mapping[str, Any], rules: Iterable[ValidationRule]) -> ValidationResult:
        """Evaluate every rule independently; a record may collect several errors and warnings"""
        result = ValidationResult()
        for rule in rules:
            if self.check_rule(record, rule):
                continue
            value = record.get(rule.target_field)
            message = render_message(rule.error_message, rule, value)
            if rule.severity == ValidationSeverity.WARNING:
                result.add_warning(rule.target_field, rule.rule_type.value, message, value)
            else:
                result.add_error(rule.target_field, rule.rule_type.value, message, value)
        return result

    def validate_batch(self, records: Iterable[Mapping[str, Any]], rules: Iterable[ValidationRule]) -> List[ValidationResult]:
        """Validate records against a rule set loaded once for the batch"""
        rules = list(rules)
        return [self.validate_record(record, rules) for record in records]

    def check_rule_definition(self, logic: RuleLogic) -> List[str]:
        """Problems with a rule's logic that can be detected before it is saved"""
        problems = []
        if logic.operator == RuleOperator.MATCHES:
            if not logic.pattern:
                problems.append("matches requires a pattern")
            else:
                try:
                    re.compile(logic.pattern)
                except re.error as e:
                    problems.append(f"invalid pattern: {e}")
        if logic.operator == RuleOperator.BETWEEN and (logic.min is None or logic.max is None):
            problems.append("between requires min and max")
        if logic.operator in (RuleOperator.IN, RuleOperator.NOT_IN) and logic.values is None:
            problems.append(f"{logic.operator.value} requires values")
        if logic.operator in (RuleOperator.GREATER_THAN, RuleOperator.LESS_THAN) and to_decimal(logic.value) is None:
            problems.append(f"{logic.operator.value} requires a numeric value")
        return problems
