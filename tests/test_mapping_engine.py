import pandas as pd
import pytest

from recordbridge.models import ErrorCategory, MappingRules
from recordbridge.utils.mapping_engine import MappingEngine, MappingError, records_from_dataframe
from recordbridge.utils.transformations import TransformationRegistry, TransformationType

def rules(**sections):
    return MappingRules.model_validate(sections)

def test_calculated_field_from_mapped_amount():
    """Test a match calculated from a mapped deferral, rounded to cents"""
    engine = MappingEngine()
    source = {"employeeNumber": "E1", "grossPay": 500000, "deferralBps": 500}
    mapping_rules = rules(
        fieldMappings=[{"sourceField": "grossPay", "destinationField": "employeePreTax"}],
        calculatedFields=[{"destinationField": "employerMatch", "formula": "employeePreTax * 0.05", "rounding": "cents"}],
    )

    assert engine.map_record(source, mapping_rules) == {"employeePreTax": 500000, "employerMatch": 25000}

def test_conditional_mapping_on_status():
    """Test a conditional mapping fires only when its condition holds"""
    engine = MappingEngine()
    mapping_rules = rules(conditionalMappings=[{
        "condition": 'source.status == "TERMINATED"',
        "mappings": [{"destinationField": "destinationStatus", "value": "INACTIVE"}],
    }])

    assert engine.map_record({"status": "TERMINATED"}, mapping_rules) == {"destinationStatus": "INACTIVE"}
    assert "destinationStatus" not in engine.map_record({"status": "ACTIVE"}, mapping_rules)

def test_field_mapping_only_writes_mapped_fields():
    """Test unmapped source fields never reach the destination"""
    engine = MappingEngine()
    mapping_rules = rules(fieldMappings=[
        {"sourceField": "ssn", "destinationField": "socialSecurityNumber", "transformation": "format_ssn"},
        {"sourceField": "middleName", "destinationField": "middleName"},
    ])

    result = engine.map_record({"ssn": "123456789", "salary": 100}, mapping_rules)
    assert result == {"socialSecurityNumber": "123-45-6789", "middleName": None}

def test_conditions_see_original_source():
    """Test conditions read the source record, not earlier stage output"""
    engine = MappingEngine()
    mapping_rules = rules(
        fieldMappings=[{"sourceField": "status", "destinationField": "status", "transformation": "lowercase"}],
        conditionalMappings=[{
            "condition": "status == 'TERMINATED'",
            "mappings": [{"destinationField": "status", "value": "T"}],
        }],
    )

    assert engine.map_record({"status": "TERMINATED"}, mapping_rules) == {"status": "T"}

def test_malformed_condition_is_false():
    """Test an unparseable condition evaluates to false without raising"""
    engine = MappingEngine()
    mapping_rules = rules(conditionalMappings=[{
        "condition": "status LIKE 'TERM%'",
        "mappings": [{"destinationField": "flag", "value": True}],
    }])

    assert engine.map_record({"status": "TERMINATED"}, mapping_rules) == {}
    assert engine.performance_stats["condition_errors"] == 1

def test_calculated_fields_do_not_see_each_other():
    """Test each formula resolves against the pre-stage destination only"""
    engine = MappingEngine()
    mapping_rules = rules(calculatedFields=[
        {"destinationField": "a", "formula": "1 + 1"},
        {"destinationField": "b", "formula": "a * 10"},
    ])

    assert engine.map_record({}, mapping_rules) == {"a": 2, "b": 0}

def test_missing_and_non_numeric_references_are_zero():
    """Test unresolvable references count as zero"""
    engine = MappingEngine()
    mapping_rules = rules(calculatedFields=[{"destinationField": "total", "formula": "salary + bonus + 5"}])

    assert engine.map_record({"salary": "abc"}, mapping_rules) == {"total": 5}

def test_source_prefix_reads_source_only():
    """Test source.name ignores fields written by earlier stages"""
    engine = MappingEngine()
    mapping_rules = rules(
        fieldMappings=[{"sourceField": "grossPay", "destinationField": "pay"}],
        calculatedFields=[
            {"destinationField": "fromDestination", "formula": "pay + 1"},
            {"destinationField": "fromSource", "formula": "source.pay + 1"},
        ],
    )

    result = engine.map_record({"grossPay": 10}, mapping_rules)
    assert result["fromDestination"] == 11
    assert result["fromSource"] == 1

def test_failing_formula_leaves_field_unset():
    """Test a formula error skips only its own field"""
    engine = MappingEngine()
    mapping_rules = rules(calculatedFields=[
        {"destinationField": "broken", "formula": "grossPay / 0"},
        {"destinationField": "half", "formula": "grossPay / 2", "rounding": "dollars"},
    ])

    assert engine.map_record({"grossPay": 5}, mapping_rules) == {"half": 3}
    assert engine.performance_stats["formula_errors"] == 1

def test_lookup_mappings():
    """Test inline hits, misses, absent values and external tables"""
    engine = MappingEngine()
    mapping_rules = rules(lookupMappings=[
        {"sourceField": "plan", "destinationField": "planCode", "lookupTable": {"401K": "P1"}, "defaultValue": "UNKNOWN"},
        {"sourceField": "division", "destinationField": "divisionCode", "lookupTable": "divisions"},
    ])

    assert engine.map_record({"plan": "401K", "division": "East"}, mapping_rules) == {
        "planCode": "P1", "divisionCode": "East",
    }
    assert engine.map_record({"plan": "403B"}, mapping_rules) == {"planCode": "UNKNOWN", "divisionCode": None}
    assert engine.map_record({}, mapping_rules)["planCode"] == "UNKNOWN"

def test_lookup_without_default_writes_null():
    """Test a lookup miss with no default writes null"""
    engine = MappingEngine()
    mapping_rules = rules(lookupMappings=[
        {"sourceField": "plan", "destinationField": "planCode", "lookupTable": {"401K": "P1"}},
    ])

    assert engine.map_record({"plan": "403B"}, mapping_rules) == {"planCode": None}

@pytest.mark.parametrize("apply_when,current,expected", [
    ("if_null", "SET", "SET"),
    ("if_null", None, "DEFAULT"),
    ("if_null", "", ""),
    ("if_empty", "", "DEFAULT"),
    ("if_empty", "SET", "SET"),
    ("always", "SET", "DEFAULT"),
])
def test_default_value_policies(apply_when, current, expected):
    """Test defaults respect values set by earlier stages"""
    engine = MappingEngine()
    mapping_rules = rules(
        fieldMappings=[{"sourceField": "status", "destinationField": "status"}],
        defaultValues=[{"destinationField": "status", "value": "DEFAULT", "applyWhen": apply_when}],
    )

    assert engine.map_record({"status": current}, mapping_rules)["status"] == expected

def test_defaults_fill_absent_fields_and_later_always_wins():
    """Test defaults on absent fields and ordering among defaults"""
    engine = MappingEngine()
    mapping_rules = rules(defaultValues=[
        {"destinationField": "country", "value": "US"},
        {"destinationField": "tags", "value": [], "applyWhen": "if_empty"},
        {"destinationField": "source", "value": "first", "applyWhen": "always"},
        {"destinationField": "source", "value": "second", "applyWhen": "always"},
    ])

    assert engine.map_record({}, mapping_rules) == {"country": "US", "tags": [], "source": "second"}

@pytest.mark.parametrize("apply_when,expected", [
    ("if_null", {"status": "INACTIVE", "total": 2, "planCode": "P1"}),
    ("if_empty", {"status": "INACTIVE", "total": 2, "planCode": "P1"}),
    ("always", {"status": "DEFAULT", "total": "DEFAULT", "planCode": "DEFAULT"}),
])
def test_defaults_respect_later_stage_values(apply_when, expected):
    """Test defaults against fields set by conditional, calculated and lookup stages"""
    engine = MappingEngine()
    mapping_rules = rules(
        conditionalMappings=[{
            "condition": "status == 'TERMINATED'",
            "mappings": [{"destinationField": "status", "value": "INACTIVE"}],
        }],
        calculatedFields=[{"destinationField": "total", "formula": "1 + 1"}],
        lookupMappings=[{"sourceField": "plan", "destinationField": "planCode", "lookupTable": {"401K": "P1"}}],
        defaultValues=[
            {"destinationField": field, "value": "DEFAULT", "applyWhen": apply_when}
            for field in ("status", "total", "planCode")
        ],
    )

    assert engine.map_record({"status": "TERMINATED", "plan": "401K"}, mapping_rules) == expected

def test_conditional_mapping_on_leading_zero_code():
    """Test a quoted plan code only matches the same text"""
    engine = MappingEngine()
    mapping_rules = rules(conditionalMappings=[{
        "condition": 'source.planCode == "0401"',
        "mappings": [{"destinationField": "plan", "value": "401K"}],
    }])

    assert engine.map_record({"planCode": "0401"}, mapping_rules) == {"plan": "401K"}
    assert engine.map_record({"planCode": "401"}, mapping_rules) == {}

def test_destination_never_shares_storage_with_source():
    """Test mapped values are copies and the source is left untouched"""
    engine = MappingEngine()
    source = {"beneficiaries": [{"name": "A"}]}
    mapping_rules = rules(fieldMappings=[{"sourceField": "beneficiaries", "destinationField": "beneficiaries"}])

    result = engine.map_record(source, mapping_rules)
    result["beneficiaries"][0]["name"] = "B"

    assert source == {"beneficiaries": [{"name": "A"}]}

def test_non_mapping_record_raises():
    """Test records that are not field/value maps are rejected"""
    with pytest.raises(MappingError):
        MappingEngine().map_record(["not", "a", "record"], rules())

def test_batch_index_stability():
    """Test a failing record keeps its index and siblings keep their order"""
    engine = MappingEngine()
    mapping_rules = rules(fieldMappings=[{"sourceField": "id", "destinationField": "id"}])

    result = engine.transform_batch([{"id": 0}, "broken", {"id": 2}, {"id": 3}], mapping_rules)

    assert result.data == [{"id": 0}, {"id": 2}, {"id": 3}]
    assert [index for index, _ in result.records] == [0, 2, 3]
    assert len(result.errors) == 1
    assert result.errors[0].record_index == 1
    assert result.errors[0].category == ErrorCategory.MAPPING_FAILED

def test_transformation_failure_keeps_raw_value():
    """Test a throwing transformation degrades to the source value for that record only"""
    def explode(value, params):
        if value == "bad":
            raise ValueError("cannot transform")
        return value.upper()

    registry = TransformationRegistry(extra={
        "explode": {"function": explode, "type": TransformationType.STRING, "description": "Fails on bad"},
    })
    engine = MappingEngine(registry)
    mapping_rules = rules(fieldMappings=[{"sourceField": "code", "destinationField": "code", "transformation": "explode"}])

    result = engine.transform_batch([{"code": "bad"}, {"code": "good"}], mapping_rules)

    assert result.errors == []
    assert result.data == [{"code": "bad"}, {"code": "GOOD"}]
    assert engine.performance_stats["transformation_errors"] == 1

def test_validate_mapping_rules_reports_problems():
    """Test save-time checks on conditions, formulas and transformations"""
    engine = MappingEngine()
    mapping_rules = rules(
        fieldMappings=[{"sourceField": "a", "destinationField": "a", "transformation": "does_not_exist"}],
        conditionalMappings=[{"condition": "a LIKE 'x'", "mappings": []}],
        calculatedFields=[{"destinationField": "b", "formula": "__import__('os')"}],
        lookupMappings=[{"sourceField": "a", "destinationField": "c", "lookupTable": "external_codes"}],
    )

    validation = engine.validate_mapping_rules(mapping_rules)

    assert validation["is_valid"] is False
    assert len(validation["errors"]) == 3
    assert len(validation["warnings"]) == 1

def test_validate_mapping_rules_known_fields():
    """Test referenced source fields are checked against a known schema"""
    engine = MappingEngine()
    mapping_rules = rules(
        fieldMappings=[{"sourceField": "grossPay", "destinationField": "employeePreTax"}],
        calculatedFields=[{"destinationField": "match", "formula": "employeePreTax * 0.05 + bonus"}],
    )

    validation = engine.validate_mapping_rules(mapping_rules, known_fields=["grossPay"])

    assert validation["is_valid"] is False
    assert validation["errors"] == ["calculated_fields[0]: unknown source field 'bonus'"]
    assert engine.validate_mapping_rules(mapping_rules, known_fields=["grossPay", "bonus"])["is_valid"]

def test_records_from_dataframe():
    """Test DataFrame rows become plain source records"""
    df = pd.DataFrame({"amount": [1.5, None], "employee": ["E1", "E2"], "hours": [40, 38]})

    records = records_from_dataframe(df)

    assert records == [
        {"amount": 1.5, "employee": "E1", "hours": 40},
        {"amount": None, "employee": "E2", "hours": 38},
    ]
    assert isinstance(records[0]["hours"], int)
