from abc import ABC, abstractmethod
from typing import List, Optional

from recordbridge.models import (
    AuditEvent, MappingConfiguration, MappingExecutionLog, MappingType, ValidationRule,
)

class RepositoryError(Exception):
    """Raised when the persistence layer fails"""
    pass

class MappingRepository(ABC):
    """Storage for mapping configurations, validation rules, execution logs and audit events.

    Lookups by configuration id are always scoped to a tenant and never
    return soft-deleted configurations.
    """

    # Mapping configurations
    @abstractmethod
    async def get_mapping_configuration(self, config_id: str, tenant_id: str) -> Optional[MappingConfiguration]:
        ...

    @abstractmethod
    async def list_mapping_configurations(self, tenant_id: str, mapping_type: Optional[MappingType] = None,
                                          include_inactive: bool = False) -> List[MappingConfiguration]:
        ...

    @abstractmethod
    async def create_mapping_configuration(self, config: MappingConfiguration) -> MappingConfiguration:
        ...

    @abstractmethod
    async def update_mapping_configuration(self, config: MappingConfiguration) -> MappingConfiguration:
        ...

    # Validation rules
    @abstractmethod
    async def get_validation_rules(self, mapping_type: str, tenant_id: str) -> List[ValidationRule]:
        """Active global and tenant rules applying to a mapping type, globals first"""
        ...

    @abstractmethod
    async def get_validation_rule(self, rule_id: str) -> Optional[ValidationRule]:
        ...

    @abstractmethod
    async def list_validation_rules(self, tenant_id: str, mapping_type: Optional[str] = None) -> List[ValidationRule]:
        """Global and tenant rules visible to a tenant, including inactive ones"""
        ...

    @abstractmethod
    async def create_validation_rule(self, rule: ValidationRule) -> ValidationRule:
        ...

    @abstractmethod
    async def update_validation_rule(self, rule: ValidationRule) -> ValidationRule:
        ...

    # Execution logs
    @abstractmethod
    async def create_execution_log(self, log: MappingExecutionLog) -> MappingExecutionLog:
        ...

    @abstractmethod
    async def get_execution_logs(self, mapping_config_id: str, limit: int) -> List[MappingExecutionLog]:
        """Most recent first"""
        ...

    # Audit trail
    @abstractmethod
    async def log_audit_event(self, event: AuditEvent) -> None:
        ...
