"""Filesystem and swap creation.

Supported Filesystems:
    swap:   mkswap
    ext4:   mkfs.ext4 -F (default for persistent and ephemeral data)
    xfs:    mkfs.xfs -f

A partition that ``blkid`` already reports as the requested type is left
untouched, which keeps repeated setup runs from wiping data.
"""

from __future__ import annotations

from nodeprep.domain import FileSystemType
from nodeprep.logging import LoggerFactory
from nodeprep.storage.commands import CommandRunner
from nodeprep.storage.exceptions import CommandExecutionError, FormatError

_MKFS_COMMANDS: dict[FileSystemType, list[str]] = {
    FileSystemType.SWAP: ["mkswap"],
    FileSystemType.EXT4: ["mkfs.ext4", "-F"],
    FileSystemType.XFS: ["mkfs.xfs", "-f"],
}


class Formatter:
    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self._log = LoggerFactory.for_disk(job_id="formatter")

    def current_type(self, partition: str) -> str:
        """Filesystem type reported by blkid, or "" when there is none."""
        try:
            result = self.runner.run("blkid", "-p", "-o", "value", "-s", "TYPE", partition)
        except CommandExecutionError:
            return ""
        return result.stdout.strip()

    def format(self, partition: str, fs_type: FileSystemType) -> None:
        if fs_type is FileSystemType.DEFAULT:
            fs_type = FileSystemType.EXT4
        command = _MKFS_COMMANDS.get(fs_type)
        if command is None:
            raise FormatError(partition, fs_type.value, "unknown filesystem type")

        if self.current_type(partition) == fs_type.value:
            self._log.debug(f"{partition} already formatted as {fs_type.value}")
            return

        self._log.info(f"Formatting {partition} as {fs_type.value}")
        try:
            self.runner.run(*command, partition)
        except CommandExecutionError as error:
            raise FormatError(partition, fs_type.value, str(error)) from error
