import asyncio
from datetime import datetime, timedelta, timezone

from recordbridge.models import ErrorCategory, ExecutionMetrics, MappingConfiguration, MappingExecutionLog, RecordError
from recordbridge.utils.execution_log import (
    STATUS_COMPLETED, STATUS_COMPLETED_WITH_ERRORS, STATUS_RUNNING, ExecutionLogRecorder,
)

START = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)

def make_config():
    return MappingConfiguration(
        tenant_id="t1", name="Loans", source_system="ADP", destination_system="RK", mapping_type="LOAN",
    )

def make_errors():
    return [
        RecordError(record_index=0, category=ErrorCategory.MAPPING_FAILED, code="MAPPING_FAILED", message="bad"),
        RecordError(record_index=2, category=ErrorCategory.VALIDATION_ERROR, code="FORMAT", message="ssn"),
        RecordError(record_index=3, category=ErrorCategory.VALIDATION_ERROR, code="FORMAT", message="ssn"),
    ]

def test_build_log_summarizes_errors(repository):
    """Test counts, error histogram and sample truncation"""
    recorder = ExecutionLogRecorder(repository, sample_size=2, record_memory=False)
    metrics = ExecutionMetrics(total_records=4, successful_records=3, failed_records=1,
                               processing_time_ms=8.0, avg_time_per_record_ms=2.0)

    log = recorder.build_log(make_config(), "t1", make_errors(), metrics, START, START + timedelta(seconds=1), "upload-1")

    assert log.records_processed == 4
    assert log.records_failed == 1
    assert log.file_upload_id == "upload-1"
    assert log.error_summary == {"MAPPING_FAILED": 1, "FORMAT": 2}
    assert [e.record_index for e in log.sample_errors] == [0, 2]
    assert log.performance_metrics == {"avg_time_per_record_ms": 2.0, "total_time_ms": 8.0}

def test_build_log_records_memory(repository):
    """Test process memory is included when enabled"""
    recorder = ExecutionLogRecorder(repository, record_memory=True)

    log = recorder.build_log(make_config(), "t1", [], ExecutionMetrics(), START, START)

    assert log.performance_metrics["memory_rss_mb"] > 0

def test_record_writes_through_repository(repository):
    """Test the log is persisted"""
    recorder = ExecutionLogRecorder(repository, record_memory=False)
    config = make_config()

    saved = asyncio.run(recorder.record(config, "t1", make_errors(), ExecutionMetrics(total_records=4), START, START))

    assert len(repository.execution_logs) == 1
    assert repository.execution_logs[0].id == saved.id
    assert saved.mapping_config_id == config.id

def test_summary_status():
    """Test status derivation for execution log summaries"""
    base = dict(mapping_config_id="m1", tenant_id="t1", execution_start=START)

    running = MappingExecutionLog(**base)
    completed = MappingExecutionLog(**base, execution_end=START, records_processed=2, records_successful=2)
    with_errors = MappingExecutionLog(**base, execution_end=START, records_processed=2, records_failed=1)

    assert ExecutionLogRecorder.summarize(running).status == STATUS_RUNNING
    assert ExecutionLogRecorder.summarize(completed).status == STATUS_COMPLETED
    assert ExecutionLogRecorder.summarize(with_errors).status == STATUS_COMPLETED_WITH_ERRORS
