from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

ALL_MAPPING_TYPES = "ALL"

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())

class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class MappingType(str, Enum):
    CONTRIBUTION = "CONTRIBUTION"
    EMPLOYEE = "EMPLOYEE"
    ELECTION = "ELECTION"
    LOAN = "LOAN"

class RoundingPolicy(str, Enum):
    NONE = "none"
    CENTS = "cents"
    DOLLARS = "dollars"

class ApplyWhen(str, Enum):
    ALWAYS = "always"
    IF_NULL = "if_null"
    IF_EMPTY = "if_empty"

class RuleOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"
    MATCHES = "matches"
    NOT_EMPTY = "not_empty"

class ConditionOperator(str, Enum):
    EQUALS = "=="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    LESS_THAN = "<"

class ValidationRuleType(str, Enum):
    IRS_LIMIT = "IRS_LIMIT"
    FORMAT = "FORMAT"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"
    REQUIRED_FIELD = "REQUIRED_FIELD"
    RANGE = "RANGE"
    PATTERN = "PATTERN"

class ValidationSeverity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"

class ErrorCategory(str, Enum):
    MAPPING_FAILED = "MAPPING_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    VALIDATION_WARNING = "VALIDATION_WARNING"

class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ACTIVATE = "ACTIVATE"
    DEACTIVATE = "DEACTIVATE"
    EXECUTE = "EXECUTE"

# Mapping Rule Models
class FieldMapping(CamelModel):
    source_field: str = Field(..., min_length=1, description="Source field name")
    destination_field: str = Field(..., min_length=1, description="Destination field name")
    transformation: Optional[str] = Field(None, description="Transformation function name")
    transformation_params: Dict[str, Any] = Field(default_factory=dict, description="Transformation parameters")
    required: bool = Field(False, description="Is this field required")

class ConditionalValue(CamelModel):
    destination_field: str = Field(..., min_length=1)
    value: Any = None

class ConditionalMapping(CamelModel):
    condition: str = Field(..., description="Condition over the source record, e.g. source.status == \"TERMINATED\"")
    mappings: List[ConditionalValue] = Field(default_factory=list)

class CalculatedField(CamelModel):
    destination_field: str = Field(..., min_length=1)
    formula: str = Field(..., description="Arithmetic formula over source fields")
    rounding: RoundingPolicy = Field(RoundingPolicy.NONE, description="Rounding policy")

class LookupMapping(CamelModel):
    source_field: str = Field(..., min_length=1)
    destination_field: str = Field(..., min_length=1)
    lookup_table: Optional[Dict[str, Any]] = Field(None, description="Inline lookup table")
    lookup_table_ref: Optional[str] = Field(None, description="External lookup table reference")
    default_value: Any = None

    @model_validator(mode="before")
    @classmethod
    def split_table_reference(cls, data: Any) -> Any:
        # Stored configurations may carry the external table name in lookupTable itself
        if isinstance(data, dict):
            for key in ("lookup_table", "lookupTable"):
                if isinstance(data.get(key), str):
                    data = dict(data)
                    data["lookup_table_ref"] = data.pop(key)
                    break
        return data

class DefaultValue(CamelModel):
    destination_field: str = Field(..., min_length=1)
    value: Any = None
    apply_when: ApplyWhen = Field(ApplyWhen.IF_NULL, description="When the default is applied")

class MappingRules(CamelModel):
    field_mappings: List[FieldMapping] = Field(default_factory=list)
    conditional_mappings: List[ConditionalMapping] = Field(default_factory=list)
    calculated_fields: List[CalculatedField] = Field(default_factory=list)
    lookup_mappings: List[LookupMapping] = Field(default_factory=list)
    default_values: List[DefaultValue] = Field(default_factory=list)

# Mapping Configuration Models
class MappingConfiguration(CamelModel):
    id: str = Field(default_factory=new_id, description="Configuration ID")
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    source_system: str = Field(..., description="Source system identifier")
    destination_system: str = Field(..., description="Destination system identifier")
    mapping_type: MappingType
    mapping_rules: MappingRules = Field(default_factory=MappingRules)
    template_id: Optional[str] = None
    is_active: bool = True
    version: int = Field(1, ge=1)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

class MappingConfigurationCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    source_system: str
    destination_system: str
    mapping_type: MappingType
    mapping_rules: MappingRules = Field(default_factory=MappingRules)
    template_id: Optional[str] = None
    is_active: bool = True

class MappingConfigurationUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    source_system: Optional[str] = None
    destination_system: Optional[str] = None
    mapping_rules: Optional[MappingRules] = None
    is_active: Optional[bool] = None

# Validation Rule Models
class RuleLogic(CamelModel):
    operator: RuleOperator
    field: Optional[str] = None
    value: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    values: Optional[List[Any]] = None

class ValidationRule(CamelModel):
    id: str = Field(default_factory=new_id)
    tenant_id: Optional[str] = Field(None, description="Owning tenant; None for global rules")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    rule_type: ValidationRuleType
    applies_to: List[str] = Field(default_factory=lambda: [ALL_MAPPING_TYPES], description="Mapping types or ALL")
    field: Optional[str] = Field(None, description="Destination field the rule targets")
    rule_logic: RuleLogic
    error_message: str = Field(..., description="Message template; {field} {value} {min} {max} {pattern} are substituted")
    severity: ValidationSeverity = ValidationSeverity.ERROR
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("applies_to", mode="before")
    @classmethod
    def coerce_applies_to(cls, v):
        if v is None:
            return [ALL_MAPPING_TYPES]
        if isinstance(v, str):
            return [v]
        return v

    @model_validator(mode="after")
    def check_target_field(self):
        if not (self.field or self.rule_logic.field):
            raise ValueError("Validation rule must target a field")
        return self

    @property
    def is_global(self) -> bool:
        return self.tenant_id is None

    @property
    def target_field(self) -> str:
        return self.field or self.rule_logic.field

    def applies_to_type(self, mapping_type: str) -> bool:
        return ALL_MAPPING_TYPES in self.applies_to or mapping_type in self.applies_to

class ValidationRuleCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    rule_type: ValidationRuleType
    applies_to: List[str] = Field(default_factory=lambda: [ALL_MAPPING_TYPES])
    field: Optional[str] = None
    rule_logic: RuleLogic
    error_message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR
    is_active: bool = True

    @field_validator("applies_to", mode="before")
    @classmethod
    def coerce_applies_to(cls, v):
        return [v] if isinstance(v, str) else v

class ValidationRuleUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    applies_to: Optional[List[str]] = None
    field: Optional[str] = None
    rule_logic: Optional[RuleLogic] = None
    error_message: Optional[str] = None
    severity: Optional[ValidationSeverity] = None
    is_active: Optional[bool] = None

# Validation Result Models
class ValidationIssue(CamelModel):
    field: str
    code: str
    message: str
    value: Any = None
    severity: ValidationSeverity = ValidationSeverity.ERROR

class ValidationResult(CamelModel):
    valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def add_error(self, field: str, code: str, message: str, value: Any = None):
        """Add validation error"""
        self.valid = False
        self.errors.append(ValidationIssue(field=field, code=code, message=message, value=value))

    def add_warning(self, field: str, code: str, message: str, value: Any = None):
        """Add validation warning"""
        self.warnings.append(ValidationIssue(
            field=field, code=code, message=message, value=value, severity=ValidationSeverity.WARNING
        ))

# Batch Result Models
class RecordError(CamelModel):
    record_index: int = Field(..., description="Index of the record in the input batch")
    category: ErrorCategory
    code: str
    message: str
    field: Optional[str] = None
    value: Any = None

class RecordWarning(CamelModel):
    record_index: int
    code: str
    message: str
    field: Optional[str] = None
    value: Any = None
    category: ErrorCategory = ErrorCategory.VALIDATION_WARNING

class ExecutionMetrics(CamelModel):
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    processing_time_ms: float = 0.0
    avg_time_per_record_ms: float = 0.0

class MappingResult(CamelModel):
    success: bool
    data: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[RecordError] = Field(default_factory=list)
    warnings: List[RecordWarning] = Field(default_factory=list)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    dry_run: bool = False

class YtdTotals(CamelModel):
    employee_elective: int = 0
    employer_contributions: int = 0

    @property
    def total_additions(self) -> int:
        return self.employee_elective + self.employer_contributions

class ApplyOptions(CamelModel):
    dry_run: bool = False
    skip_validation: bool = False
    check_compliance: bool = False
    file_upload_id: Optional[str] = None
    user_id: Optional[str] = None
    ytd_baselines: Dict[str, YtdTotals] = Field(default_factory=dict, description="Year-to-date totals keyed by employee identifier")
    plan_employee_limit: Optional[int] = Field(None, description="Plan employee contribution limit in cents")
    plan_match_limit: Optional[int] = Field(None, description="Plan employer match limit in cents")

# Execution Log Models
class MappingExecutionLog(CamelModel):
    id: str = Field(default_factory=new_id)
    mapping_config_id: str
    tenant_id: str
    file_upload_id: Optional[str] = None
    execution_start: datetime
    execution_end: Optional[datetime] = None
    records_processed: int = 0
    records_successful: int = 0
    records_failed: int = 0
    error_summary: Dict[str, int] = Field(default_factory=dict, description="Error code histogram")
    sample_errors: List[RecordError] = Field(default_factory=list)
    performance_metrics: Dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

class ExecutionLogSummary(CamelModel):
    id: str
    mapping_config_id: str
    file_upload_id: Optional[str] = None
    execution_start: datetime
    execution_end: Optional[datetime] = None
    records_processed: int
    records_successful: int
    records_failed: int
    error_summary: Dict[str, int] = Field(default_factory=dict)
    performance_metrics: Dict[str, float] = Field(default_factory=dict)
    status: str

# Audit Models
class AuditEvent(CamelModel):
    id: str = Field(default_factory=new_id)
    tenant_id: Optional[str] = Field(None, description="Tenant the change belongs to; None for global rules")
    user_id: Optional[str] = None
    action: AuditAction
    entity_type: str
    entity_id: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utc_now)
