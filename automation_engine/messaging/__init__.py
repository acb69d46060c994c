"""Tenant-partitioned workflow job queue on Redis."""

from automation_engine.messaging.consumer import PartitionWorker
from automation_engine.messaging.queue import (
    DIRECT_EXECUTION_JOB_ID,
    Job,
    JobQueue,
    TenantJobQueue,
    partition_name,
)

__all__ = [
    "DIRECT_EXECUTION_JOB_ID",
    "Job",
    "JobQueue",
    "PartitionWorker",
    "TenantJobQueue",
    "partition_name",
]
