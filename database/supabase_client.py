from supabase import create_client, Client
from config import settings
from typing import Any, Dict, List, Optional
import logging

from pydantic import ValidationError

from recordbridge.models import (
    ALL_MAPPING_TYPES, AuditEvent, MappingConfiguration, MappingExecutionLog, MappingType, ValidationRule,
)
from recordbridge.utils.validators import select_applicable_rules
from .base import MappingRepository, RepositoryError

logger = logging.getLogger(__name__)

MAPPING_CONFIGURATIONS = "mapping_configurations"
VALIDATION_RULES = "validation_rules"
EXECUTION_LOGS = "mapping_execution_logs"
AUDIT_LOGS = "audit_logs"

class SupabaseRepository(MappingRepository):
    """Mapping repository backed by Supabase tables"""

    def __init__(self, client: Optional[Client] = None):
        if client is None and not settings.is_supabase_configured():
            raise RepositoryError("Supabase client initialization failed: SUPABASE_URL and SUPABASE_KEY are required")
        try:
            self.client: Client = client or create_client(
                settings.supabase_url,
                settings.supabase_key
            )
            logger.info("Supabase client initialized successfully")
        except Exception as e:
            logger.error(f"Supabase client initialization failed: {str(e)}")
            raise RepositoryError(f"Supabase client initialization failed: {str(e)}")

    @staticmethod
    def _row(model) -> Dict[str, Any]:
        return model.model_dump(mode="json")

    # Mapping Configurations
    async def get_mapping_configuration(self, config_id: str, tenant_id: str) -> Optional[MappingConfiguration]:
        """Get a live mapping configuration owned by a tenant"""
        try:
            result = self.client.from_(MAPPING_CONFIGURATIONS)\
                .select("*")\
                .eq("id", config_id)\
                .eq("tenant_id", tenant_id)\
                .is_("deleted_at", "null")\
                .limit(1)\
                .execute()
            return MappingConfiguration.model_validate(result.data[0]) if result.data else None
        except Exception as e:
            logger.error(f"Mapping fetch failed for {config_id}: {str(e)}")
            raise RepositoryError(f"Mapping fetch failed: {str(e)}")

    async def list_mapping_configurations(self, tenant_id: str, mapping_type: Optional[MappingType] = None,
                                          include_inactive: bool = False) -> List[MappingConfiguration]:
        """List a tenant's live mapping configurations, newest first"""
        try:
            query = self.client.from_(MAPPING_CONFIGURATIONS)\
                .select("*")\
                .eq("tenant_id", tenant_id)\
                .is_("deleted_at", "null")\
                .order("created_at", desc=True)

            if not include_inactive:
                query = query.eq("is_active", True)
            if mapping_type is not None:
                query = query.eq("mapping_type", MappingType(mapping_type).value)

            result = query.execute()
            return [MappingConfiguration.model_validate(row) for row in result.data]
        except Exception as e:
            logger.error(f"Mapping list failed for tenant {tenant_id}: {str(e)}")
            raise RepositoryError(f"Mapping list failed: {str(e)}")

    async def create_mapping_configuration(self, config: MappingConfiguration) -> MappingConfiguration:
        """Insert a new mapping configuration"""
        try:
            result = self.client.from_(MAPPING_CONFIGURATIONS).insert(self._row(config)).execute()
            logger.info(f"Mapping configuration created: {config.name}")
            return MappingConfiguration.model_validate(result.data[0]) if result.data else config
        except Exception as e:
            logger.error(f"Mapping creation failed: {str(e)}")
            raise RepositoryError(f"Mapping creation failed: {str(e)}")

    async def update_mapping_configuration(self, config: MappingConfiguration) -> MappingConfiguration:
        """Overwrite a mapping configuration in place"""
        try:
            result = self.client.from_(MAPPING_CONFIGURATIONS)\
                .update(self._row(config))\
                .eq("id", config.id)\
                .eq("tenant_id", config.tenant_id)\
                .execute()
            return MappingConfiguration.model_validate(result.data[0]) if result.data else config
        except Exception as e:
            logger.error(f"Mapping update failed for {config.id}: {str(e)}")
            raise RepositoryError(f"Mapping update failed: {str(e)}")

    # Validation Rules
    def _parse_rules(self, rows: List[Dict[str, Any]]) -> List[ValidationRule]:
        rules = []
        for row in rows:
            try:
                rules.append(ValidationRule.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed validation rule {row.get('id')}: {e}")
        return rules

    async def get_validation_rules(self, mapping_type: str, tenant_id: str) -> List[ValidationRule]:
        """Load the active global and tenant rules for a mapping type"""
        try:
            result = self.client.from_(VALIDATION_RULES)\
                .select("*")\
                .eq("is_active", True)\
                .overlaps("applies_to", [mapping_type, ALL_MAPPING_TYPES])\
                .or_(f"tenant_id.is.null,tenant_id.eq.{tenant_id}")\
                .execute()
            return select_applicable_rules(self._parse_rules(result.data), mapping_type, tenant_id)
        except Exception as e:
            logger.error(f"Validation rule fetch failed for {mapping_type}: {str(e)}")
            raise RepositoryError(f"Validation rule fetch failed: {str(e)}")

    async def get_validation_rule(self, rule_id: str) -> Optional[ValidationRule]:
        try:
            result = self.client.from_(VALIDATION_RULES).select("*").eq("id", rule_id).limit(1).execute()
            return ValidationRule.model_validate(result.data[0]) if result.data else None
        except Exception as e:
            logger.error(f"Validation rule fetch failed for {rule_id}: {str(e)}")
            raise RepositoryError(f"Validation rule fetch failed: {str(e)}")

    async def list_validation_rules(self, tenant_id: str, mapping_type: Optional[str] = None) -> List[ValidationRule]:
        try:
            query = self.client.from_(VALIDATION_RULES)\
                .select("*")\
                .or_(f"tenant_id.is.null,tenant_id.eq.{tenant_id}")\
                .order("created_at", desc=False)
            if mapping_type is not None:
                query = query.overlaps("applies_to", [mapping_type, ALL_MAPPING_TYPES])
            rules = self._parse_rules(query.execute().data)
            return [r for r in rules if r.is_global or r.tenant_id == tenant_id]
        except Exception as e:
            logger.error(f"Validation rule list failed for tenant {tenant_id}: {str(e)}")
            raise RepositoryError(f"Validation rule list failed: {str(e)}")

    async def create_validation_rule(self, rule: ValidationRule) -> ValidationRule:
        try:
            result = self.client.from_(VALIDATION_RULES).insert(self._row(rule)).execute()
            logger.info(f"Validation rule created: {rule.name}")
            return ValidationRule.model_validate(result.data[0]) if result.data else rule
        except Exception as e:
            logger.error(f"Validation rule creation failed: {str(e)}")
            raise RepositoryError(f"Validation rule creation failed: {str(e)}")

    async def update_validation_rule(self, rule: ValidationRule) -> ValidationRule:
        try:
            result = self.client.from_(VALIDATION_RULES)\
                .update(self._row(rule))\
                .eq("id", rule.id)\
                .execute()
            return ValidationRule.model_validate(result.data[0]) if result.data else rule
        except Exception as e:
            logger.error(f"Validation rule update failed for {rule.id}: {str(e)}")
            raise RepositoryError(f"Validation rule update failed: {str(e)}")

    # Execution Logs
    async def create_execution_log(self, log: MappingExecutionLog) -> MappingExecutionLog:
        """Append an execution log"""
        try:
            result = self.client.from_(EXECUTION_LOGS).insert(self._row(log)).execute()
            return MappingExecutionLog.model_validate(result.data[0]) if result.data else log
        except Exception as e:
            logger.error(f"Execution log write failed for mapping {log.mapping_config_id}: {str(e)}")
            raise RepositoryError(f"Execution log write failed: {str(e)}")

    async def get_execution_logs(self, mapping_config_id: str, limit: int) -> List[MappingExecutionLog]:
        """Get the most recent execution logs for a mapping"""
        try:
            result = self.client.from_(EXECUTION_LOGS)\
                .select("*")\
                .eq("mapping_config_id", mapping_config_id)\
                .order("execution_start", desc=True)\
                .limit(limit)\
                .execute()
            return [MappingExecutionLog.model_validate(row) for row in result.data]
        except Exception as e:
            logger.error(f"Execution log fetch failed for mapping {mapping_config_id}: {str(e)}")
            raise RepositoryError(f"Execution log fetch failed: {str(e)}")

    # Audit Trail
    async def log_audit_event(self, event: AuditEvent) -> None:
        """Record an audit event"""
        try:
            self.client.from_(AUDIT_LOGS).insert(self._row(event)).execute()
        except Exception as e:
            logger.error(f"Audit log write failed for {event.entity_type} {event.entity_id}: {str(e)}")
            raise RepositoryError(f"Audit log write failed: {str(e)}")
