"""Domain models for disk layout and process supervision."""

from __future__ import annotations

from .models import (
    GIB,
    MIB,
    CommandResult,
    DeviceClass,
    DiskSettings,
    FailureAlert,
    FileSystemType,
    JobService,
    JobStatus,
    MonitStatus,
    Mount,
    Partition,
    PartitionType,
    ReloadOptions,
)


__all__ = [
    "GIB",
    "MIB",
    "CommandResult",
    "DeviceClass",
    "DiskSettings",
    "FailureAlert",
    "FileSystemType",
    "JobService",
    "JobStatus",
    "MonitStatus",
    "Mount",
    "Partition",
    "PartitionType",
    "ReloadOptions",
]
