"""Device naming, root partition lookup and device path resolution."""

from __future__ import annotations

import os
import re
from typing import Callable, Protocol

from nodeprep.domain import DeviceClass, DiskSettings
from nodeprep.logging import LoggerFactory
from nodeprep.polling import Clock, SystemClock, poll_until
from nodeprep.storage.exceptions import (
    DiskSetupError,
    ResolutionError,
    ResolutionTimeout,
)

NVME_PREFIX = "/dev/nvme"
MAPPER_PREFIX = "/dev/mapper/"

_MAPPER_PARTITION = re.compile(r"^(/dev/mapper/.+)-part(\d+)$")
_NVME_PARTITION = re.compile(r"^(/dev/nvme.+?)p(\d+)$")
_GENERIC_PARTITION = re.compile(r"^(.*?\D)(\d+)$")

MEMINFO_PATH = "/proc/meminfo"


def classify_device(path: str) -> DeviceClass:
    """Device class from the path string alone."""
    if path.startswith(NVME_PREFIX):
        return DeviceClass.NVME
    if path.startswith(MAPPER_PREFIX):
        return DeviceClass.MAPPER
    return DeviceClass.GENERIC


def partition_path(device_path: str, index: int) -> str:
    """Path of partition ``index`` on ``device_path``.

    >>> partition_path("/dev/nvme0n1", 2)
    '/dev/nvme0n1p2'
    >>> partition_path("/dev/mapper/disk", 1)
    '/dev/mapper/disk-part1'
    """
    device_class = classify_device(device_path)
    if device_class is DeviceClass.NVME:
        return f"{device_path}p{index}"
    if device_class is DeviceClass.MAPPER:
        return f"{device_path}-part{index}"
    return f"{device_path}{index}"


def split_partition_path(path: str) -> tuple[str, int]:
    """Inverse of :func:`partition_path`: (whole disk path, partition index).

    Raises:
        ValueError: ``path`` carries no partition index
    """
    device_class = classify_device(path)
    if device_class is DeviceClass.MAPPER:
        pattern = _MAPPER_PARTITION
    elif device_class is DeviceClass.NVME:
        pattern = _NVME_PARTITION
    else:
        pattern = _GENERIC_PARTITION
    match = pattern.match(path)
    if not match:
        raise ValueError(f"Not a partition path: {path}")
    return match.group(1), int(match.group(2))


class MountLister(Protocol):
    def search_mounts(self) -> list:
        ...


def find_root_partition(searcher: MountLister) -> str:
    """Device mounted at ``/``, ignoring the ``rootfs`` pseudo entry."""
    try:
        mounts = searcher.search_mounts()
    except (OSError, DiskSetupError) as error:
        raise DiskSetupError("Finding root partition device", str(error)) from error
    for mount in mounts:
        if mount.mount_point == "/" and mount.partition_path != "rootfs":
            return mount.partition_path
    raise DiskSetupError("Finding root partition device", "no device is mounted at /")


def read_total_memory(meminfo_path: str = MEMINFO_PATH) -> int:
    """Total physical memory in bytes, from ``MemTotal`` in /proc/meminfo."""
    with open(meminfo_path, encoding="utf-8") as handle:
        for line in handle:
            if line.startswith("MemTotal:"):
                parts = line.split()
                value = int(parts[1])
                unit = parts[2].lower() if len(parts) > 2 else "b"
                return value * 1024 if unit == "kb" else value
    raise ValueError(f"MemTotal not found in {meminfo_path}")


class DevicePathResolver(Protocol):
    def resolve(self, disk: DiskSettings) -> str:
        """Real device path for ``disk``.

        Raises:
            ResolutionTimeout: the device did not appear in time
            ResolutionError: the device can never be resolved
        """


class PathDevicePathResolver:
    """Waits for the disk's path hint to appear and returns its real path."""

    def __init__(
        self,
        timeout_seconds: float,
        clock: Clock | None = None,
        poll_interval: float = 0.5,
        exists: Callable[[str], bool] = os.path.exists,
        realpath: Callable[[str], str] = os.path.realpath,
    ):
        self.timeout_seconds = timeout_seconds
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self._exists = exists
        self._realpath = realpath
        self._log = LoggerFactory.for_disk(job_id="resolver")

    def resolve(self, disk: DiskSettings) -> str:
        if not disk.path:
            raise ResolutionError(disk.id, "disk has no device path")

        found = self._exists(disk.path) or poll_until(
            lambda: True if self._exists(disk.path) else None,
            self.clock,
            self.timeout_seconds,
            self.poll_interval,
        )
        if not found:
            self._log.warning(
                f"Device {disk.path} for disk {disk.id} did not appear "
                f"within {self.timeout_seconds:g}s"
            )
            raise ResolutionTimeout(disk.id, self.timeout_seconds)

        real_path = self._realpath(disk.path)
        self._log.debug(f"Resolved disk {disk.id} to {real_path}")
        return real_path
