"""Domain model for disk layout and process supervision.

Type-safe value objects passed between the disk layout manager, its
primitives, the monit client and the job supervisor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Tuple


GIB = 1024**3
MIB = 1024**2


# ==============================================================================
# Disk Domain
# ==============================================================================


class DeviceClass(Enum):
    """Device naming family, derived from the device path only."""

    GENERIC = "generic"  # /dev/sda -> /dev/sda1
    NVME = "nvme"  # /dev/nvme0n1 -> /dev/nvme0n1p1
    MAPPER = "mapper"  # /dev/mapper/x -> /dev/mapper/x-part1


class PartitionType(Enum):
    SWAP = "swap"
    LINUX = "linux"


class FileSystemType(Enum):
    """Filesystems the formatter knows how to create."""

    DEFAULT = ""
    SWAP = "swap"
    EXT4 = "ext4"
    XFS = "xfs"


@dataclass(frozen=True)
class Partition:
    """One entry of a partition plan.

    A ``size_in_bytes`` of 0 means "the rest of the device".
    """

    size_in_bytes: int
    type: PartitionType

    @property
    def fills_device(self) -> bool:
        return self.size_in_bytes == 0


@dataclass(frozen=True)
class DiskSettings:
    """A disk as described by the orchestrator."""

    id: str
    path: str = ""  # path hint used by the device path resolver
    filesystem_type: str | None = None
    mount_options: Tuple[str, ...] = ()
    partitioner: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "DiskSettings":
        return cls(
            id=str(data.get("id", "")),
            path=str(data.get("path", "") or ""),
            filesystem_type=data.get("filesystem_type"),
            mount_options=tuple(data.get("mount_options") or ()),
            partitioner=data.get("partitioner"),
        )


@dataclass(frozen=True)
class Mount:
    partition_path: str
    mount_point: str


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a finished external command."""

    stdout: str
    stderr: str = ""
    exit_code: int = 0


# ==============================================================================
# Supervisor Domain
# ==============================================================================


class JobStatus(Enum):
    """Aggregated status reported for all supervised jobs."""

    RUNNING = "running"
    FAILING = "failing"
    STARTING = "starting"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class JobService:
    """Snapshot of one monit-managed service."""

    name: str
    monitored: bool = True
    pending: bool = False
    errored: bool = False
    status: str = "running"
    status_message: str = ""


@dataclass(frozen=True)
class MonitStatus:
    """Result of one monit status query.

    ``incarnation`` changes every time monit reloads; only equality is
    meaningful, never ordering.
    """

    incarnation: int
    services: Tuple[JobService, ...] = ()
    groups: dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def services_in_group(self, group: str) -> list[JobService]:
        names = self.groups.get(group, ())
        by_name = {service.name: service for service in self.services}
        return [by_name[name] for name in names if name in by_name]


@dataclass(frozen=True)
class ReloadOptions:
    max_tries: int = 3
    max_check_tries: int = 10
    delay_between_check_tries: float = 1.0


@dataclass(frozen=True)
class FailureAlert:
    """A failure notification received from monit over SMTP."""

    id: str
    service: str
    event: str
    action: str
    date: datetime | None
    description: str
