import logging
from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

import psutil

from config import settings
from ..models import (
    ExecutionLogSummary, ExecutionMetrics, MappingConfiguration, MappingExecutionLog, RecordError,
)

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"

def current_memory_mb() -> float:
    """Resident memory of this process in MB"""
    return round(psutil.Process().memory_info().rss / (1024 * 1024), 2)

class ExecutionLogRecorder:
    """Summarizes batch runs into execution logs and writes them through a repository"""

    def __init__(self, repository, sample_size: Optional[int] = None, record_memory: Optional[bool] = None):
        self.repository = repository
        self.sample_size = settings.execution_log_sample_size if sample_size is None else sample_size
        self.record_memory = settings.record_memory_metrics if record_memory is None else record_memory

    def build_log(self, config: MappingConfiguration, tenant_id: str, errors: Iterable[RecordError],
                  metrics: ExecutionMetrics, started_at: datetime, finished_at: datetime,
                  file_upload_id: Optional[str] = None) -> MappingExecutionLog:
        """Aggregate a batch outcome: counts, error-code histogram and a small error sample"""
        errors = list(errors)
        performance = {
            "avg_time_per_record_ms": metrics.avg_time_per_record_ms,
            "total_time_ms": metrics.processing_time_ms,
        }
        if self.record_memory:
            performance["memory_rss_mb"] = current_memory_mb()

        return MappingExecutionLog(
            mapping_config_id=config.id,
            tenant_id=tenant_id,
            file_upload_id=file_upload_id,
            execution_start=started_at,
            execution_end=finished_at,
            records_processed=metrics.total_records,
            records_successful=metrics.successful_records,
            records_failed=metrics.failed_records,
            error_summary=dict(Counter(error.code for error in errors)),
            sample_errors=errors[:self.sample_size],
            performance_metrics=performance,
        )

    async def record(self, config: MappingConfiguration, tenant_id: str, errors: Iterable[RecordError],
                     metrics: ExecutionMetrics, started_at: datetime, finished_at: datetime,
                     file_upload_id: Optional[str] = None) -> MappingExecutionLog:
        """Build and persist the execution log for one batch"""
        log = self.build_log(config, tenant_id, errors, metrics, started_at, finished_at, file_upload_id)
        saved = await self.repository.create_execution_log(log)
        logger.info(
            f"Execution log {saved.id} written for mapping {config.id}: "
            f"{saved.records_successful}/{saved.records_processed} successful"
        )
        return saved

    @staticmethod
    def summarize(log: MappingExecutionLog) -> ExecutionLogSummary:
        if log.execution_end is None:
            status = STATUS_RUNNING
        elif log.records_failed == 0:
            status = STATUS_COMPLETED
        else:
            status = STATUS_COMPLETED_WITH_ERRORS

        return ExecutionLogSummary(
            id=log.id,
            mapping_config_id=log.mapping_config_id,
            file_upload_id=log.file_upload_id,
            execution_start=log.execution_start,
            execution_end=log.execution_end,
            records_processed=log.records_processed,
            records_successful=log.records_successful,
            records_failed=log.records_failed,
            error_summary=log.error_summary,
            performance_metrics=log.performance_metrics,
            status=status,
        )
