from typing import Dict, List, Optional

from recordbridge.models import (
    AuditEvent, MappingConfiguration, MappingExecutionLog, MappingType, ValidationRule,
)
from recordbridge.utils.validators import select_applicable_rules
from .base import MappingRepository, RepositoryError

class InMemoryRepository(MappingRepository):
    """Process-local repository for tests and local dry runs.

    Stored and returned models are deep copies, so callers can never mutate
    what is stored.
    """

    def __init__(self):
        self.configurations: Dict[str, MappingConfiguration] = {}
        self.rules: Dict[str, ValidationRule] = {}
        self.execution_logs: List[MappingExecutionLog] = []
        self.audit_events: List[AuditEvent] = []

    async def get_mapping_configuration(self, config_id: str, tenant_id: str) -> Optional[MappingConfiguration]:
        config = self.configurations.get(config_id)
        if config is None or config.tenant_id != tenant_id or config.deleted_at is not None:
            return None
        return config.model_copy(deep=True)

    async def list_mapping_configurations(self, tenant_id: str, mapping_type: Optional[MappingType] = None,
                                          include_inactive: bool = False) -> List[MappingConfiguration]:
        configs = [
            c for c in self.configurations.values()
            if c.tenant_id == tenant_id
            and c.deleted_at is None
            and (include_inactive or c.is_active)
            and (mapping_type is None or c.mapping_type == mapping_type)
        ]
        configs.sort(key=lambda c: c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in configs]

    async def create_mapping_configuration(self, config: MappingConfiguration) -> MappingConfiguration:
        if config.id in self.configurations:
            raise RepositoryError(f"Mapping configuration {config.id} already exists")
        self.configurations[config.id] = config.model_copy(deep=True)
        return config.model_copy(deep=True)

    async def update_mapping_configuration(self, config: MappingConfiguration) -> MappingConfiguration:
        if config.id not in self.configurations:
            raise RepositoryError(f"Mapping configuration {config.id} does not exist")
        self.configurations[config.id] = config.model_copy(deep=True)
        return config.model_copy(deep=True)

    async def get_validation_rules(self, mapping_type: str, tenant_id: str) -> List[ValidationRule]:
        rules = select_applicable_rules(self.rules.values(), mapping_type, tenant_id)
        return [r.model_copy(deep=True) for r in rules]

    async def get_validation_rule(self, rule_id: str) -> Optional[ValidationRule]:
        rule = self.rules.get(rule_id)
        return rule.model_copy(deep=True) if rule else None

    async def list_validation_rules(self, tenant_id: str, mapping_type: Optional[str] = None) -> List[ValidationRule]:
        return [
            r.model_copy(deep=True) for r in self.rules.values()
            if (r.is_global or r.tenant_id == tenant_id)
            and (mapping_type is None or r.applies_to_type(mapping_type))
        ]

    async def create_validation_rule(self, rule: ValidationRule) -> ValidationRule:
        self.rules[rule.id] = rule.model_copy(deep=True)
        return rule.model_copy(deep=True)

    async def update_validation_rule(self, rule: ValidationRule) -> ValidationRule:
        if rule.id not in self.rules:
            raise RepositoryError(f"Validation rule {rule.id} does not exist")
        self.rules[rule.id] = rule.model_copy(deep=True)
        return rule.model_copy(deep=True)

    async def create_execution_log(self, log: MappingExecutionLog) -> MappingExecutionLog:
        self.execution_logs.append(log.model_copy(deep=True))
        return log.model_copy(deep=True)

    async def get_execution_logs(self, mapping_config_id: str, limit: int) -> List[MappingExecutionLog]:
        logs = [log for log in self.execution_logs if log.mapping_config_id == mapping_config_id]
        logs.sort(key=lambda log: log.execution_start, reverse=True)
        return [log.model_copy(deep=True) for log in logs[:limit]]

    async def log_audit_event(self, event: AuditEvent) -> None:
        self.audit_events.append(event.model_copy(deep=True))
