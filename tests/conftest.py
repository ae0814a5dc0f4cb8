import asyncio

import pytest

from database.memory import InMemoryRepository
from recordbridge.mapping_service import MappingService
from recordbridge.models import MappingConfiguration, MappingRules, MappingType, ValidationRule

TENANT_ID = "tenant-acme"
OTHER_TENANT_ID = "tenant-globex"

@pytest.fixture
def tenant_id():
    return TENANT_ID

@pytest.fixture
def other_tenant_id():
    return OTHER_TENANT_ID

@pytest.fixture
def repository():
    return InMemoryRepository()

@pytest.fixture
def service(repository):
    return MappingService(repository)

@pytest.fixture
def store_config(repository):
    """Store a mapping configuration directly in the repository"""
    def _store(rules=None, mapping_type=MappingType.CONTRIBUTION, tenant_id=TENANT_ID, **kwargs):
        config = MappingConfiguration(
            tenant_id=tenant_id,
            name=kwargs.pop("name", "ADP contributions"),
            source_system="ADP",
            destination_system="RECORDKEEPER",
            mapping_type=mapping_type,
            mapping_rules=MappingRules.model_validate(rules or {}),
            **kwargs,
        )
        return asyncio.run(repository.create_mapping_configuration(config))
    return _store

@pytest.fixture
def store_rule(repository):
    """Store a validation rule directly in the repository"""
    def _store(field, logic, tenant_id=None, **kwargs):
        rule = ValidationRule(
            tenant_id=tenant_id,
            name=kwargs.pop("name", f"{field} {logic['operator']}"),
            rule_type=kwargs.pop("rule_type", "BUSINESS_LOGIC"),
            applies_to=kwargs.pop("applies_to", ["ALL"]),
            field=field,
            rule_logic=logic,
            error_message=kwargs.pop("error_message", "{field} failed validation"),
            **kwargs,
        )
        return asyncio.run(repository.create_validation_rule(rule))
    return _store

@pytest.fixture
def contribution_rules():
    return {
        "fieldMappings": [
            {"sourceField": "employeeNumber", "destinationField": "employeeId"},
            {"sourceField": "grossPay", "destinationField": "employeePreTax"},
        ],
        "calculatedFields": [
            {"destinationField": "employerMatch", "formula": "employeePreTax * 0.05", "rounding": "cents"},
        ],
    }
