import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Union

from config import settings
from database.base import MappingRepository
from .models import (
    ApplyOptions, AuditAction, AuditEvent, ErrorCategory, ExecutionLogSummary, ExecutionMetrics,
    MappingConfiguration, MappingConfigurationCreate, MappingConfigurationUpdate, MappingResult,
    MappingRules, MappingType, RecordError, RecordWarning, ValidationResult, ValidationRule,
    ValidationRuleCreate, ValidationRuleUpdate, utc_now,
)
from .utils.compliance import ContributionComplianceChecker
from .utils.execution_log import ExecutionLogRecorder
from .utils.mapping_engine import MappingEngine
from .utils.validators import RuleValidator

logger = logging.getLogger(__name__)

MAPPING_ENTITY = "mapping_configuration"
RULE_ENTITY = "validation_rule"

class MappingConfigurationError(Exception):
    """Whole-call failure raised before any record is processed"""
    pass

class MappingNotFoundError(MappingConfigurationError):
    pass

class MappingInactiveError(MappingConfigurationError):
    pass

class BatchTooLargeError(MappingConfigurationError):
    pass

class ValidationRuleNotFoundError(MappingConfigurationError):
    pass

class InvalidMappingRulesError(MappingConfigurationError):
    """Mapping rules or a validation rule definition rejected at save time"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid mapping rules: " + "; ".join(errors))

class MappingService:
    """Applies mapping configurations to record batches and manages the configurations themselves"""

    def __init__(self, repository: MappingRepository,
                 engine: Optional[MappingEngine] = None,
                 validator: Optional[RuleValidator] = None,
                 recorder: Optional[ExecutionLogRecorder] = None,
                 compliance: Optional[ContributionComplianceChecker] = None):
        self.repository = repository
        self.engine = engine or MappingEngine()
        self.validator = validator or RuleValidator()
        self.recorder = recorder or ExecutionLogRecorder(repository)
        self.compliance = compliance or ContributionComplianceChecker()

    # Batch execution
    async def apply(self, mapping_config_id: str, source_records: Iterable[Any], tenant_id: str,
                    options: Optional[ApplyOptions] = None) -> MappingResult:
        """Transform and validate a batch of source records with one mapping configuration.

        Only configuration problems (unknown, inactive, batch too large) raise.
        Per-record faults come back as indexed entries in the result.
        """
        options = options or ApplyOptions()
        config = await self._get_active_configuration(mapping_config_id, tenant_id)

        records = list(source_records)
        if settings.max_batch_size and len(records) > settings.max_batch_size:
            raise BatchTooLargeError(
                f"Batch of {len(records)} records exceeds the limit of {settings.max_batch_size}"
            )

        rules: List[ValidationRule] = []
        if not options.skip_validation:
            rules = await self.repository.get_validation_rules(config.mapping_type.value, tenant_id)

        started_at = utc_now()
        start = time.perf_counter()

        batch = self.engine.transform_batch(records, config.mapping_rules)
        errors: List[RecordError] = list(batch.errors)
        warnings: List[RecordWarning] = []

        if not options.skip_validation:
            results = self.validator.validate_batch(batch.data, rules)
            for (index, _), result in zip(batch.records, results):
                self._collect_issues(index, result, errors, warnings)

            if options.check_compliance and config.mapping_type == MappingType.CONTRIBUTION:
                compliance = self.compliance.check_batch(
                    batch.records,
                    baselines=options.ytd_baselines,
                    plan_employee_limit=options.plan_employee_limit,
                    plan_match_limit=options.plan_match_limit,
                )
                for index, result in compliance.items():
                    self._collect_issues(index, result, errors, warnings)

        # Stable sort keeps per-record issue order
        errors.sort(key=lambda error: error.record_index)
        warnings.sort(key=lambda warning: warning.record_index)

        elapsed_ms = (time.perf_counter() - start) * 1000
        finished_at = utc_now()

        total = len(records)
        failed = len(batch.errors)
        metrics = ExecutionMetrics(
            total_records=total,
            successful_records=total - failed,
            failed_records=failed,
            processing_time_ms=round(elapsed_ms, 3),
            avg_time_per_record_ms=round(elapsed_ms / total, 3) if total else 0.0,
        )

        result = MappingResult(
            success=not any(
                error.category in (ErrorCategory.MAPPING_FAILED, ErrorCategory.VALIDATION_ERROR)
                for error in errors
            ),
            data=batch.data,
            errors=errors,
            warnings=warnings,
            metrics=metrics,
            dry_run=options.dry_run,
        )

        if not options.dry_run:
            await self.recorder.record(
                config, tenant_id, errors, metrics, started_at, finished_at, options.file_upload_id
            )
            await self._audit(
                tenant_id, options.user_id, AuditAction.EXECUTE, MAPPING_ENTITY, config.id,
                new_values={
                    "version": config.version,
                    "file_upload_id": options.file_upload_id,
                    "success": result.success,
                    "total_records": metrics.total_records,
                    "successful_records": metrics.successful_records,
                    "failed_records": metrics.failed_records,
                    "error_count": len(errors),
                    "warning_count": len(warnings),
                },
            )

        logger.info(
            f"Mapping completed: {metrics.successful_records}/{metrics.total_records} records successful "
            f"(config {config.id}, {len(errors)} errors, {len(warnings)} warnings"
            f"{', dry run' if options.dry_run else ''})"
        )
        return result

    async def test_mapping(self, mapping_config_id: str, sample_records: Iterable[Any], tenant_id: str,
                           options: Optional[ApplyOptions] = None) -> MappingResult:
        """Dry run: full result, nothing persisted"""
        options = (options or ApplyOptions()).model_copy(update={"dry_run": True})
        return await self.apply(mapping_config_id, sample_records, tenant_id, options)

    @staticmethod
    def _collect_issues(index: int, result: ValidationResult,
                        errors: List[RecordError], warnings: List[RecordWarning]):
        for issue in result.errors:
            errors.append(RecordError(
                record_index=index,
                category=ErrorCategory.VALIDATION_ERROR,
                code=issue.code,
                message=issue.message,
                field=issue.field,
                value=issue.value,
            ))
        for issue in result.warnings:
            warnings.append(RecordWarning(
                record_index=index,
                code=issue.code,
                message=issue.message,
                field=issue.field,
                value=issue.value,
            ))

    async def get_execution_logs(self, mapping_config_id: str, tenant_id: str,
                                 limit: Optional[int] = None) -> List[ExecutionLogSummary]:
        """Most recent execution logs for a mapping owned by the tenant"""
        limit = settings.execution_log_default_limit if limit is None else limit
        if limit < 1:
            raise ValueError("limit must be at least 1")

        await self.get_mapping(mapping_config_id, tenant_id)
        logs = await self.repository.get_execution_logs(mapping_config_id, limit)
        return [ExecutionLogRecorder.summarize(log) for log in logs]

    # Mapping configurations
    async def _get_active_configuration(self, config_id: str, tenant_id: str) -> MappingConfiguration:
        config = await self.get_mapping(config_id, tenant_id)
        if not config.is_active:
            raise MappingInactiveError(f"Mapping configuration {config_id} is inactive")
        return config

    def _check_rules(self, rules: MappingRules):
        validation = self.engine.validate_mapping_rules(rules)
        for warning in validation["warnings"]:
            logger.warning(f"Mapping rules warning: {warning}")
        if not validation["is_valid"]:
            raise InvalidMappingRulesError(validation["errors"])

    async def get_mapping(self, config_id: str, tenant_id: str) -> MappingConfiguration:
        config = await self.repository.get_mapping_configuration(config_id, tenant_id)
        if config is None:
            raise MappingNotFoundError(f"Mapping configuration {config_id} not found")
        return config

    async def list_mappings(self, tenant_id: str, mapping_type: Optional[MappingType] = None,
                            include_inactive: bool = False) -> List[MappingConfiguration]:
        return await self.repository.list_mapping_configurations(tenant_id, mapping_type, include_inactive)

    async def create_mapping(self, data: Union[MappingConfigurationCreate, Dict[str, Any]], tenant_id: str,
                             user_id: Optional[str] = None) -> MappingConfiguration:
        """Validate and store a new mapping configuration at version 1"""
        if isinstance(data, dict):
            data = MappingConfigurationCreate.model_validate(data)
        self._check_rules(data.mapping_rules)

        config = MappingConfiguration(
            **data.model_dump(exclude={"mapping_rules"}),
            mapping_rules=data.mapping_rules,
            tenant_id=tenant_id,
            created_by=user_id,
            updated_by=user_id,
        )
        saved = await self.repository.create_mapping_configuration(config)
        logger.info(f"Mapping configuration {saved.id} created for tenant {tenant_id}")
        await self._audit(tenant_id, user_id, AuditAction.CREATE, MAPPING_ENTITY, saved.id,
                          new_values=saved.model_dump(mode="json"))
        return saved

    async def update_mapping(self, config_id: str, changes: Union[MappingConfigurationUpdate, Dict[str, Any]],
                             tenant_id: str, user_id: Optional[str] = None) -> MappingConfiguration:
        """Apply changes in place and bump the version"""
        if isinstance(changes, dict):
            changes = MappingConfigurationUpdate.model_validate(changes)
        existing = await self.get_mapping(config_id, tenant_id)
        if changes.mapping_rules is not None:
            self._check_rules(changes.mapping_rules)

        merged = existing.model_dump()
        merged.update(changes.model_dump(exclude_unset=True))
        merged.update(version=existing.version + 1, updated_by=user_id, updated_at=utc_now())
        updated = MappingConfiguration.model_validate(merged)

        saved = await self.repository.update_mapping_configuration(updated)
        logger.info(f"Mapping configuration {config_id} updated to version {saved.version}")
        await self._audit(tenant_id, user_id, AuditAction.UPDATE, MAPPING_ENTITY, config_id,
                          old_values=existing.model_dump(mode="json"), new_values=saved.model_dump(mode="json"))
        return saved

    async def delete_mapping(self, config_id: str, tenant_id: str, user_id: Optional[str] = None) -> MappingConfiguration:
        """Soft delete; execution logs keep referring to the configuration"""
        existing = await self.get_mapping(config_id, tenant_id)
        now = utc_now()
        deleted = existing.model_copy(update={
            "is_active": False, "deleted_at": now, "updated_at": now, "updated_by": user_id,
        })
        saved = await self.repository.update_mapping_configuration(deleted)
        logger.info(f"Mapping configuration {config_id} deleted")
        await self._audit(tenant_id, user_id, AuditAction.DELETE, MAPPING_ENTITY, config_id,
                          old_values=existing.model_dump(mode="json"))
        return saved

    async def activate_mapping(self, config_id: str, tenant_id: str, user_id: Optional[str] = None) -> MappingConfiguration:
        return await self._set_active(config_id, tenant_id, user_id, True)

    async def deactivate_mapping(self, config_id: str, tenant_id: str, user_id: Optional[str] = None) -> MappingConfiguration:
        return await self._set_active(config_id, tenant_id, user_id, False)

    async def _set_active(self, config_id: str, tenant_id: str, user_id: Optional[str],
                          active: bool) -> MappingConfiguration:
        existing = await self.get_mapping(config_id, tenant_id)
        updated = existing.model_copy(update={"is_active": active, "updated_at": utc_now(), "updated_by": user_id})
        saved = await self.repository.update_mapping_configuration(updated)
        await self._audit(
            tenant_id, user_id, AuditAction.ACTIVATE if active else AuditAction.DEACTIVATE,
            MAPPING_ENTITY, config_id,
            old_values={"is_active": existing.is_active}, new_values={"is_active": active},
        )
        return saved

    # Validation rules
    def _check_rule_definition(self, rule: ValidationRule):
        problems = self.validator.check_rule_definition(rule.rule_logic)
        if problems:
            raise InvalidMappingRulesError([f"validation rule '{rule.name}': {p}" for p in problems])

    async def _get_owned_rule(self, rule_id: str, tenant_id: Optional[str]) -> ValidationRule:
        # Global rules are only reachable without a tenant
        rule = await self.repository.get_validation_rule(rule_id)
        if rule is None or rule.tenant_id != tenant_id:
            raise ValidationRuleNotFoundError(f"Validation rule {rule_id} not found")
        return rule

    async def list_validation_rules(self, tenant_id: str, mapping_type: Optional[str] = None) -> List[ValidationRule]:
        return await self.repository.list_validation_rules(tenant_id, mapping_type)

    async def create_validation_rule(self, data: Union[ValidationRuleCreate, Dict[str, Any]],
                                     tenant_id: Optional[str], user_id: Optional[str] = None) -> ValidationRule:
        """Store a tenant rule, or a global rule when tenant_id is None"""
        if isinstance(data, dict):
            data = ValidationRuleCreate.model_validate(data)
        rule = ValidationRule(
            **data.model_dump(exclude={"rule_logic"}),
            rule_logic=data.rule_logic,
            tenant_id=tenant_id,
        )
        self._check_rule_definition(rule)

        saved = await self.repository.create_validation_rule(rule)
        logger.info(f"Validation rule {saved.id} created ({'global' if saved.is_global else tenant_id})")
        await self._audit(tenant_id, user_id, AuditAction.CREATE, RULE_ENTITY, saved.id,
                          new_values=saved.model_dump(mode="json"))
        return saved

    async def update_validation_rule(self, rule_id: str, changes: Union[ValidationRuleUpdate, Dict[str, Any]],
                                     tenant_id: Optional[str], user_id: Optional[str] = None) -> ValidationRule:
        if isinstance(changes, dict):
            changes = ValidationRuleUpdate.model_validate(changes)
        existing = await self._get_owned_rule(rule_id, tenant_id)

        merged = existing.model_dump()
        merged.update(changes.model_dump(exclude_unset=True))
        merged["updated_at"] = utc_now()
        updated = ValidationRule.model_validate(merged)
        self._check_rule_definition(updated)

        saved = await self.repository.update_validation_rule(updated)
        await self._audit(tenant_id, user_id, AuditAction.UPDATE, RULE_ENTITY, rule_id,
                          old_values=existing.model_dump(mode="json"), new_values=saved.model_dump(mode="json"))
        return saved

    async def delete_validation_rule(self, rule_id: str, tenant_id: Optional[str],
                                     user_id: Optional[str] = None) -> ValidationRule:
        """Soft delete by deactivation"""
        existing = await self._get_owned_rule(rule_id, tenant_id)
        deleted = existing.model_copy(update={"is_active": False, "updated_at": utc_now()})
        saved = await self.repository.update_validation_rule(deleted)
        await self._audit(tenant_id, user_id, AuditAction.DELETE, RULE_ENTITY, rule_id,
                          old_values=existing.model_dump(mode="json"))
        return saved

    # Audit trail
    async def _audit(self, tenant_id: Optional[str], user_id: Optional[str], action: AuditAction,
                     entity_type: str, entity_id: str,
                     old_values: Optional[Dict[str, Any]] = None,
                     new_values: Optional[Dict[str, Any]] = None):
        event = AuditEvent(
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_values=old_values,
            new_values=new_values,
        )
        try:
            await self.repository.log_audit_event(event)
        except Exception as e:
            logger.error(f"Audit log write failed for {entity_type} {entity_id} ({action.value}): {str(e)}")
