"""Job types executed by background migrations.

Public API:
- BatchJob: Protocol every job type implements
- BackfillColumn / CopyColumn: built-in job types and their argument models
- get_job_type / register_job_type: name-based registry
"""

from __future__ import annotations

from bgmigrate.jobs.backfill_column import BackfillColumn, BackfillColumnArguments
from bgmigrate.jobs.base import SubBatchedJob
from bgmigrate.jobs.copy_column import CopyColumn, CopyColumnArguments
from bgmigrate.jobs.protocol import BatchJob
from bgmigrate.jobs.registry import (
    get_job_type,
    parse_arguments,
    register_job_type,
    registered_job_types,
    unregister_job_type,
)

__all__ = [
    "BackfillColumn",
    "BackfillColumnArguments",
    "BatchJob",
    "CopyColumn",
    "CopyColumnArguments",
    "SubBatchedJob",
    "get_job_type",
    "parse_arguments",
    "register_job_type",
    "registered_job_types",
    "unregister_job_type",
]
