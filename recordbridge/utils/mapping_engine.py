import copy
import logging
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..models import (
    ApplyWhen, CalculatedField, ConditionalMapping, DefaultValue, ErrorCategory, FieldMapping,
    LookupMapping, MappingRules, RecordError,
)
from .expressions import (
    ExpressionError, FieldRef, apply_rounding, evaluate_formula, formula_fields,
    parse_condition, to_decimal, to_python_number,
)
from .transformations import TransformationRegistry, lookup_key
from .values import is_empty, is_missing

logger = logging.getLogger(__name__)

SourceRecord = Mapping[str, Any]
DestinationRecord = Dict[str, Any]

class MappingError(Exception):
    """Raised when a record cannot be run through the mapping stages"""
    pass

class BatchTransformResult:
    """Destination records and MAPPING_FAILED errors for one batch, keyed by batch index"""

    def __init__(self):
        self.records: List[Tuple[int, DestinationRecord]] = []
        self.errors: List[RecordError] = []

    @property
    def data(self) -> List[DestinationRecord]:
        return [record for _, record in self.records]

class MappingEngine:
    """Runs source records through the five mapping stages.

    Stage order is fixed: field mappings, conditional mappings, calculated
    fields, lookups, defaults. Each stage degrades per field rather than per
    record: a failing transformation keeps the raw value, a failing formula
    leaves its field unset, and a malformed condition is false.
    """

    def __init__(self, transformations: Optional[TransformationRegistry] = None):
        self.transformations = transformations or TransformationRegistry()
        self.performance_stats = {
            "total_records_processed": 0,
            "total_transformations": 0,
            "transformation_errors": 0,
            "condition_errors": 0,
            "formula_errors": 0,
        }

    # Stage 1: field mappings
    def apply_field_mappings(self, source: SourceRecord, field_mappings: Iterable[FieldMapping],
                             record_index: Optional[int] = None) -> DestinationRecord:
        """Build a new destination record holding exactly the mapped fields"""
        destination: DestinationRecord = {}
        for mapping in field_mappings:
            value = source.get(mapping.source_field)
            if is_missing(value):
                value = None
            elif mapping.transformation:
                value = self._apply_transformation(value, mapping, record_index)
            destination[mapping.destination_field] = copy.deepcopy(value)
        return destination

    def _apply_transformation(self, value: Any, mapping: FieldMapping, record_index: Optional[int]) -> Any:
        try:
            result = self.transformations.transform(mapping.transformation, value, mapping.transformation_params)
            self.performance_stats["total_transformations"] += 1
            return result
        except Exception as e:
            logger.warning(
                f"Transformation '{mapping.transformation}' failed for field '{mapping.source_field}' "
                f"in record {record_index}: {e}"
            )
            self.performance_stats["transformation_errors"] += 1
            return value

    # Stage 2: conditional mappings
    def apply_conditional_mappings(self, source: SourceRecord, destination: DestinationRecord,
                                   conditional_mappings: Iterable[ConditionalMapping],
                                   record_index: Optional[int] = None) -> DestinationRecord:
        """Write literal values when a condition over the original source record holds"""
        for conditional in conditional_mappings:
            if not self._condition_holds(conditional.condition, source, record_index):
                continue
            for assignment in conditional.mappings:
                destination[assignment.destination_field] = copy.deepcopy(assignment.value)
        return destination

    def _condition_holds(self, condition: str, source: SourceRecord, record_index: Optional[int]) -> bool:
        try:
            return parse_condition(condition).evaluate(source)
        except ExpressionError as e:
            logger.warning(f"Condition {condition!r} treated as false for record {record_index}: {e}")
            self.performance_stats["condition_errors"] += 1
            return False

    # Stage 3: calculated fields
    def apply_calculated_fields(self, source: SourceRecord, destination: DestinationRecord,
                                calculated_fields: Iterable[CalculatedField],
                                record_index: Optional[int] = None) -> DestinationRecord:
        """Evaluate formulas and write their rounded results.

        A bare name resolves from the source record, then from the fields
        produced by the field and conditional stages; ``source.name`` resolves
        from the source record only. Calculated fields never see each other's
        results. Missing or non-numeric values count as zero.
        """
        mapped = dict(destination)

        def resolve(ref: FieldRef) -> Decimal:
            if ref.name in source:
                raw = source[ref.name]
            elif ref.source_only:
                raw = None
            else:
                raw = mapped.get(ref.name)
            number = to_decimal(raw)
            return number if number is not None else Decimal(0)

        for calculated in calculated_fields:
            try:
                result = apply_rounding(evaluate_formula(calculated.formula, resolve), calculated.rounding)
                destination[calculated.destination_field] = to_python_number(result)
            except (ExpressionError, ArithmeticError) as e:
                logger.warning(
                    f"Formula for '{calculated.destination_field}' failed in record {record_index}: {e}"
                )
                self.performance_stats["formula_errors"] += 1
        return destination

    # Stage 4: lookups
    def apply_lookup_mappings(self, source: SourceRecord, destination: DestinationRecord,
                              lookup_mappings: Iterable[LookupMapping],
                              record_index: Optional[int] = None) -> DestinationRecord:
        """Translate source values through inline lookup tables"""
        for lookup in lookup_mappings:
            value = source.get(lookup.source_field)
            if is_missing(value):
                result = lookup.default_value
            elif lookup.lookup_table is None:
                # External tables are not resolved here; the raw value passes through
                logger.debug(
                    f"Lookup table '{lookup.lookup_table_ref}' for '{lookup.destination_field}' is external; "
                    f"passing record {record_index} value through"
                )
                result = value
            else:
                found = lookup.lookup_table.get(lookup_key(value))
                result = found if found is not None else lookup.default_value
            destination[lookup.destination_field] = copy.deepcopy(result)
        return destination

    # Stage 5: defaults
    def apply_default_values(self, destination: DestinationRecord,
                             default_values: Iterable[DefaultValue]) -> DestinationRecord:
        """Fill destination fields according to each default's apply-when policy"""
        for default in default_values:
            current = destination.get(default.destination_field)
            if (
                default.apply_when == ApplyWhen.ALWAYS
                or (default.apply_when == ApplyWhen.IF_NULL and is_missing(current))
                or (default.apply_when == ApplyWhen.IF_EMPTY and is_empty(current))
            ):
                destination[default.destination_field] = copy.deepcopy(default.value)
        return destination

    def map_record(self, record: Any, rules: MappingRules, record_index: Optional[int] = None) -> DestinationRecord:
        """Run one source record through all five stages"""
        if not isinstance(record, Mapping):
            raise MappingError(
                f"Record {record_index} is not a field/value mapping (got {type(record).__name__})"
            )

        source = MappingProxyType(dict(record))
        destination = self.apply_field_mappings(source, rules.field_mappings, record_index)
        destination = self.apply_conditional_mappings(source, destination, rules.conditional_mappings, record_index)
        destination = self.apply_calculated_fields(source, destination, rules.calculated_fields, record_index)
        destination = self.apply_lookup_mappings(source, destination, rules.lookup_mappings, record_index)
        return self.apply_default_values(destination, rules.default_values)

    def transform_batch(self, records: Iterable[Any], rules: MappingRules) -> BatchTransformResult:
        """Map every record, converting per-record failures into MAPPING_FAILED errors"""
        result = BatchTransformResult()
        for index, record in enumerate(records):
            try:
                result.records.append((index, self.map_record(record, rules, index)))
            except Exception as e:
                logger.error(f"Mapping failed for record {index}: {e}")
                result.errors.append(RecordError(
                    record_index=index,
                    category=ErrorCategory.MAPPING_FAILED,
                    code=ErrorCategory.MAPPING_FAILED.value,
                    message=str(e) or e.__class__.__name__,
                ))
            self.performance_stats["total_records_processed"] += 1
        return result

    def validate_mapping_rules(self, rules: MappingRules, known_fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Check rules before they are saved.

        Conditions and formulas must parse, transformations must exist, and
        when ``known_fields`` is given every referenced source field must be
        one of them.
        """
        errors: List[str] = []
        warnings: List[str] = []
        known = set(known_fields) if known_fields is not None else None

        def check_field(location: str, field: str, extra: Iterable[str] = ()):
            if known is not None and field not in known and field not in extra:
                errors.append(f"{location}: unknown source field '{field}'")

        for i, mapping in enumerate(rules.field_mappings):
            location = f"field_mappings[{i}]"
            check_field(location, mapping.source_field)
            if mapping.transformation and not self.transformations.has(mapping.transformation):
                errors.append(f"{location}: unknown transformation '{mapping.transformation}'")

        for i, conditional in enumerate(rules.conditional_mappings):
            location = f"conditional_mappings[{i}]"
            try:
                condition = parse_condition(conditional.condition)
            except ExpressionError as e:
                errors.append(f"{location}: {e}")
                continue
            check_field(location, condition.field)

        produced = [m.destination_field for m in rules.field_mappings]
        produced += [a.destination_field for c in rules.conditional_mappings for a in c.mappings]
        for i, calculated in enumerate(rules.calculated_fields):
            location = f"calculated_fields[{i}]"
            try:
                references = formula_fields(calculated.formula)
            except ExpressionError as e:
                errors.append(f"{location}: {e}")
                continue
            for name in references:
                check_field(location, name, produced)

        for i, lookup in enumerate(rules.lookup_mappings):
            location = f"lookup_mappings[{i}]"
            check_field(location, lookup.source_field)
            if lookup.lookup_table is None:
                warnings.append(
                    f"{location}: external lookup table '{lookup.lookup_table_ref}' is not resolved; "
                    f"source values pass through unchanged"
                )

        return {"is_valid": not errors, "errors": errors, "warnings": warnings}

def _to_python_scalar(value: Any) -> Any:
    if is_missing(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        return value.item()
    return value

def records_from_dataframe(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a DataFrame into source records (NaN to None, numpy scalars to Python)"""
    return [
        {str(column): _to_python_scalar(value) for column, value in row.items()}
        for row in df.to_dict(orient="records")
    ]
