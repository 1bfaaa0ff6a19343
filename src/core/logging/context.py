"""Context variables for structured logging."""

from contextvars import ContextVar
from typing import Dict, Optional

_cycle_id: ContextVar[str] = ContextVar("cycle_id", default="")
_stage_name: ContextVar[str] = ContextVar("stage_name", default="")
_job: ContextVar[str] = ContextVar("job", default="")
_partition_id: ContextVar[str] = ContextVar("partition_id", default="")
_file_id: ContextVar[str] = ContextVar("file_id", default="")


def set_log_context(
    cycle_id: Optional[str] = None,
    stage: Optional[str] = None,
    job: Optional[str] = None,
    partition_id: Optional[str] = None,
    file_id: Optional[str] = None,
) -> None:
    if cycle_id is not None:
        _cycle_id.set(cycle_id)
    if stage is not None:
        _stage_name.set(stage)
    if job is not None:
        _job.set(job)
    if partition_id is not None:
        _partition_id.set(partition_id)
    if file_id is not None:
        _file_id.set(file_id)


def get_log_context() -> Dict[str, str]:
    return {
        "cycle_id": _cycle_id.get(),
        "stage": _stage_name.get(),
        "job": _job.get(),
        "partition_id": _partition_id.get(),
        "file_id": _file_id.get(),
    }


def clear_log_context() -> None:
    _cycle_id.set("")
    _stage_name.set("")
    _job.set("")
    _partition_id.set("")
    _file_id.set("")
