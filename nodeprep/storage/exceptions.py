"""Custom exceptions for disk layout operations.

This module defines a hierarchy of exceptions for storage operations so that
callers can tell stage failures apart and messages name the failing stage.

Exception Hierarchy:
    StorageError (base)
        ├── DiskSetupError
        ├── ResolutionError
        │   └── ResolutionTimeout
        ├── PartitionError
        ├── FormatError
        │   └── UnsupportedFilesystemError
        ├── MountError
        │   └── UnmountError
        ├── CommandExecutionError
        └── InsufficientSpaceError

Usage:
    from nodeprep.storage.exceptions import PartitionError

    try:
        partitioner.partition(device, plan)
    except StorageError as err:
        raise PartitionError(device, str(err), stage="Partitioning ephemeral disk") from err
"""

from __future__ import annotations

from typing import Sequence

from nodeprep.exceptions import AgentError


class StorageError(AgentError):
    """Base exception for all storage operations."""


class DiskSetupError(StorageError):
    """A named disk setup stage failed."""

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"{stage}: {reason}")


class ResolutionError(StorageError):
    """The real device path of a disk could not be determined."""

    def __init__(self, disk_id: str, reason: str):
        self.disk_id = disk_id
        self.reason = reason
        super().__init__(f"Getting real device path for disk '{disk_id}': {reason}")


class ResolutionTimeout(ResolutionError):
    """The device for a disk did not appear before the resolution deadline.

    This is the only soft storage error: unmount, mounted and mountable
    checks report a negative result instead of raising it.
    """

    def __init__(self, disk_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(disk_id, f"timed out after {timeout_seconds:g}s")


class PartitionError(StorageError):
    """Partitioning a device failed."""

    def __init__(self, device: str, reason: str, stage: str = "Partitioning disk"):
        self.device = device
        self.reason = reason
        self.stage = stage
        super().__init__(f"{stage} '{device}': {reason}")


class FormatError(StorageError):
    """Creating a filesystem or swap area failed."""

    def __init__(self, partition: str, fs_type: str, reason: str):
        self.partition = partition
        self.fs_type = fs_type
        self.reason = reason
        super().__init__(f"Formatting partition with {fs_type}: {reason}")


class UnsupportedFilesystemError(FormatError):
    """Persistent disks only accept ext4 and xfs."""

    def __init__(self, fs_type: str):
        self.partition = ""
        self.fs_type = fs_type
        self.reason = "unsupported"
        StorageError.__init__(self, f'The filesystem type "{fs_type}" is not supported')


class MountError(StorageError):
    """Mounting, remounting or enabling swap failed."""

    def __init__(self, target: str, reason: str, stage: str = "Mounting partition"):
        self.target = target
        self.reason = reason
        self.stage = stage
        super().__init__(f"{stage} '{target}': {reason}")


class UnmountError(MountError):
    """Unmounting a partition failed."""

    def __init__(self, target: str, reason: str):
        super().__init__(target, reason, stage="Unmounting")


class CommandExecutionError(StorageError):
    """An external command exited non-zero or could not be started.

    ``stdout`` and ``stderr`` are kept so callers can inspect the output of
    tools that report useful state on failure (e.g. ``parted`` on a blank disk).
    """

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(command)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        cmd = " ".join(self.command)
        if exit_code is None:
            msg = f"Running command '{cmd}' failed: {stderr.strip()}"
        else:
            msg = f"Running command '{cmd}' failed with exit code {exit_code}"
            if stderr.strip():
                msg += f": {stderr.strip()}"
        super().__init__(msg)


class InsufficientSpaceError(StorageError):
    """Not enough free space remains on the root device."""

    def __init__(self, device: str, available_bytes: int, required_bytes: int):
        self.device = device
        self.available_bytes = available_bytes
        self.required_bytes = required_bytes
        super().__init__(
            f"Insufficient remaining disk space on '{device}': "
            f"{available_bytes} bytes available, {required_bytes} bytes required"
        )
