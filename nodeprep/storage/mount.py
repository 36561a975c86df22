"""Mount table queries and mount/unmount/swap operations.

Operations:
    - MountsSearcher.search_mounts(): parse the kernel mount table
    - Mounter.mount() / swap_on(): attach a filesystem or swap area
    - Mounter.unmount(): detach, reporting whether anything was mounted
    - Mounter.is_mounted() / is_mount_point(): mount table lookups
    - Mounter.remount_as_readonly() / remount(): used by disk migration

Implementation Details:
    - The mount table is re-read on every query, never cached
    - Octal escapes in /proc/mounts (e.g. ``\\040`` for space) are decoded
"""

from __future__ import annotations

import os
import re

from nodeprep.domain import Mount
from nodeprep.logging import LoggerFactory
from nodeprep.storage.commands import CommandRunner
from nodeprep.storage.exceptions import (
    CommandExecutionError,
    DiskSetupError,
    MountError,
    UnmountError,
)

MOUNTS_PATH = "/proc/mounts"

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _decode_field(value: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), value)


def _normalize(path: str) -> str:
    if path in ("", "/"):
        return path
    return path.rstrip("/")


class MountsSearcher:
    """Reads the kernel mount table."""

    def __init__(self, mounts_path: str = MOUNTS_PATH):
        self.mounts_path = mounts_path

    def search_mounts(self) -> list[Mount]:
        try:
            with open(self.mounts_path, encoding="utf-8") as handle:
                lines = handle.read().splitlines()
        except OSError as error:
            raise DiskSetupError("Reading mount table", str(error)) from error

        mounts = []
        for line in lines:
            fields = line.split()
            if len(fields) < 2:
                continue
            mounts.append(
                Mount(
                    partition_path=_decode_field(fields[0]),
                    mount_point=_decode_field(fields[1]),
                )
            )
        return mounts


class Mounter:
    """mount/umount/swapon wrapper backed by the mount table."""

    def __init__(self, runner: CommandRunner, searcher: MountsSearcher | None = None):
        self.runner = runner
        self.searcher = searcher or MountsSearcher()
        self._log = LoggerFactory.for_disk(job_id="mounter")

    def mount(self, partition: str, mount_point: str, *options: str) -> None:
        command = ["mount"]
        if options:
            command += ["-o", ",".join(options)]
        command += [partition, mount_point]
        try:
            self.runner.run(*command)
        except CommandExecutionError as error:
            raise MountError(partition, str(error)) from error
        self._log.info(f"Mounted {partition} at {mount_point}")

    def swap_on(self, partition: str) -> None:
        try:
            active = self.runner.run("swapon", "-s").stdout
        except CommandExecutionError as error:
            raise MountError(partition, str(error), stage="Listing swap areas") from error
        for line in active.splitlines()[1:]:
            fields = line.split()
            if fields and fields[0] == partition:
                self._log.debug(f"Swap already enabled on {partition}")
                return
        try:
            self.runner.run("swapon", partition)
        except CommandExecutionError as error:
            raise MountError(partition, str(error), stage="Enabling swap on") from error
        self._log.info(f"Enabled swap on {partition}")

    def unmount(self, partition_or_mount_point: str) -> bool:
        """Unmount a partition or mount point.

        Returns:
            True when something was unmounted, False when it was not mounted

        Raises:
            UnmountError: umount failed
        """
        if not self.is_mounted(partition_or_mount_point):
            return False
        try:
            self.runner.run("umount", partition_or_mount_point)
        except CommandExecutionError as error:
            raise UnmountError(partition_or_mount_point, str(error)) from error
        self._log.info(f"Unmounted {partition_or_mount_point}")
        return True

    def is_mounted(self, partition_or_mount_point: str) -> bool:
        target = _normalize(partition_or_mount_point)
        return any(
            mount.partition_path == target or _normalize(mount.mount_point) == target
            for mount in self.searcher.search_mounts()
        )

    def is_mount_point(self, path: str) -> tuple[str, bool]:
        """(device mounted at ``path``, whether ``path`` is a mount point)."""
        target = _normalize(path)
        for mount in self.searcher.search_mounts():
            if _normalize(mount.mount_point) == target:
                return mount.partition_path, True
        return "", False

    def remount_as_readonly(self, mount_point: str) -> None:
        partition, mounted = self.is_mount_point(mount_point)
        if not mounted:
            raise MountError(mount_point, "not a mount point", stage="Remounting read-only")
        try:
            self.runner.run("mount", "-o", "remount,ro", partition, mount_point)
        except CommandExecutionError as error:
            raise MountError(mount_point, str(error), stage="Remounting read-only") from error

    def remount(self, from_mount_point: str, to_mount_point: str, *options: str) -> None:
        """Move the device mounted at ``from_mount_point`` to ``to_mount_point``."""
        partition, mounted = self.is_mount_point(from_mount_point)
        if not mounted:
            raise MountError(from_mount_point, "not a mount point", stage="Remounting")
        self.unmount(from_mount_point)
        os.makedirs(to_mount_point, exist_ok=True)
        self.mount(partition, to_mount_point, *options)
