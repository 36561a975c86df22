"""Ephemeral, root, raw and persistent disk layout.

This module implements the disk side of node preparation: it decides how
ephemeral disks are split into swap and data, grows the root filesystem,
labels raw disks, and mounts, unmounts and migrates persistent disks.

Operations:
    - setup_ephemeral_disk(): partition, format and mount ephemeral storage,
      falling back to free space on the root disk when allowed
    - setup_root_disk(): grow the root partition and filesystem
    - setup_raw_ephemeral_disks(): GPT-label raw disks that have no table
    - is_persistent_disk_mountable() / is_persistent_disk_mounted()
    - mount_persistent_disk() / unmount_persistent_disk()
    - migrate_persistent_disk(): copy a persistent disk onto a new one and
      move the new one into place
    - get_ephemeral_disk_path() / associate_disk()

Implementation Details:
    - partition -> format -> mount is strictly sequential; a failed stage
      aborts the operation with the stage name in the message
    - only ResolutionTimeout is soft (unmount, mounted and mountable checks)
    - no internal locking; callers serialize operations per disk
"""

from __future__ import annotations

import os
import re
import shlex
import shutil
from typing import Callable, Sequence

from nodeprep.config.settings import AgentOptions, DirProvider
from nodeprep.domain import GIB, DiskSettings, FileSystemType, Partition, PartitionType
from nodeprep.exceptions import ConfigWriteError
from nodeprep.logging import LoggerFactory, operation_context
from nodeprep.storage import managed_disk
from nodeprep.storage.commands import CommandRunner
from nodeprep.storage.devices import (
    DevicePathResolver,
    find_root_partition,
    partition_path,
    read_total_memory,
    split_partition_path,
)
from nodeprep.storage.exceptions import (
    CommandExecutionError,
    DiskSetupError,
    InsufficientSpaceError,
    PartitionError,
    ResolutionError,
    ResolutionTimeout,
    StorageError,
    UnsupportedFilesystemError,
)
from nodeprep.storage.format import Formatter
from nodeprep.storage.mount import Mounter
from nodeprep.storage.partition import Partitioner, partitioner_for

EPHEMERAL_DIR_MODE = 0o750
PERSISTENT_DIR_MODE = 0o700
MIN_ROOT_EPHEMERAL_SPACE = GIB

MULTIPATH_RESOLUTION_TYPES = frozenset({"iscsi", "multipath"})

# parted's wording for a disk without a partition table. Locale and version
# dependent; see DESIGN.md.
UNRECOGNISED_DISK_LABEL = "unrecognised disk label"

_PARTED_TABLE = re.compile(r"^Partition Table:\s*(\S+)", re.MULTILINE)
_PARTED_ENTRY = re.compile(r"^\s*\d+\s+\S+", re.MULTILINE)
_SFDISK_ENTRY = re.compile(r"^/dev/\S+\s*:\s*start=", re.MULTILINE)
_NO_PARTITION_TABLE = (
    "unrecognized partition table",
    "does not contain a recognized partition table",
    "No partitions found",
)

_SUPPORTED_PERSISTENT_FS = {
    "": FileSystemType.EXT4,
    "ext4": FileSystemType.EXT4,
    "xfs": FileSystemType.XFS,
}


def calculate_ephemeral_partitions(
    disk_size: int, mem_total: Callable[[], int], desired_swap_size: int | None = None
) -> list[Partition]:
    """Swap/data split for an ephemeral disk of ``disk_size`` bytes.

    An explicit swap size wins; 0 means no swap partition at all. Without
    one, swap matches memory when the disk holds more than twice the memory,
    otherwise the disk is halved.
    """
    if desired_swap_size is not None:
        swap_size = desired_swap_size
    else:
        memory = mem_total()
        swap_size = memory if disk_size > 2 * memory else disk_size // 2

    if swap_size == 0:
        return [Partition(size_in_bytes=disk_size, type=PartitionType.LINUX)]
    return [
        Partition(size_in_bytes=swap_size, type=PartitionType.SWAP),
        Partition(size_in_bytes=disk_size - swap_size, type=PartitionType.LINUX),
    ]


class DiskLayoutManager:
    """Disk layout operations for one node."""

    def __init__(
        self,
        options: AgentOptions,
        dirs: DirProvider,
        runner: CommandRunner,
        resolver: DevicePathResolver,
        mounter: Mounter,
        formatter: Formatter,
        partitioners: dict[str, Partitioner],
        root_partitioner: Partitioner,
        mem_total: Callable[[], int] = read_total_memory,
    ):
        self.options = options
        self.dirs = dirs
        self.runner = runner
        self.resolver = resolver
        self.mounter = mounter
        self.formatter = formatter
        self.partitioners = partitioners
        self.root_partitioner = root_partitioner
        self.mem_total = mem_total
        self._log = LoggerFactory.for_disk(job_id="disk-layout")

    # ------------------------------------------------------------------
    # Ephemeral disk
    # ------------------------------------------------------------------

    def setup_ephemeral_disk(
        self, device_path: str | None, desired_swap_size: int | None = None
    ) -> None:
        """Partition, format and mount ephemeral storage at the data dir.

        Args:
            device_path: real path of the ephemeral disk, or None/"" to fall
                back to the root disk
            desired_swap_size: explicit swap size in bytes; 0 disables swap
        """
        data_dir = self.dirs.data_dir()
        with operation_context("setup_ephemeral_disk", device=device_path or "-") as log:
            try:
                os.makedirs(data_dir, mode=EPHEMERAL_DIR_MODE, exist_ok=True)
                os.chmod(data_dir, EPHEMERAL_DIR_MODE)
            except OSError as error:
                raise DiskSetupError(f"Creating data dir '{data_dir}'", str(error)) from error

            if self.options.skip_disk_setup:
                log.info("Disk setup skipped by configuration")
                return

            if self.options.scrub_ephemeral_disk:
                self._scrub_ephemeral_data(data_dir)

            if device_path:
                swap_partition, data_partition = self._partition_ephemeral_disk(
                    device_path, desired_swap_size
                )
            elif self.options.create_partition_if_no_ephemeral_disk:
                swap_partition, data_partition = self._partition_root_disk(desired_swap_size)
            else:
                raise DiskSetupError(
                    "Setting up ephemeral disk", "cannot use root partition as ephemeral disk"
                )

            if swap_partition:
                self.formatter.format(swap_partition, FileSystemType.SWAP)
            self.formatter.format(data_partition, FileSystemType.EXT4)
            self.mounter.mount(data_partition, data_dir)
            if swap_partition:
                self.mounter.swap_on(swap_partition)

    def _plan(self, disk_size: int, desired_swap_size: int | None) -> list[Partition]:
        try:
            return calculate_ephemeral_partitions(disk_size, self.mem_total, desired_swap_size)
        except (OSError, ValueError) as error:
            raise DiskSetupError("Calculating partition sizes", str(error)) from error

    def _partition_ephemeral_disk(
        self, device_path: str, desired_swap_size: int | None
    ) -> tuple[str | None, str]:
        partitioner = partitioner_for(None, self.partitioners)
        try:
            disk_size = partitioner.get_device_size_in_bytes(device_path)
        except StorageError as error:
            raise DiskSetupError("Calculating partition sizes", str(error)) from error
        plan = self._plan(disk_size, desired_swap_size)
        self._log.info(f"Ephemeral disk {device_path} ({disk_size} bytes) plan: {plan}")

        try:
            partitioner.partition(device_path, plan)
        except StorageError as error:
            raise PartitionError(
                device_path, str(error), stage="Partitioning ephemeral disk"
            ) from error

        if len(plan) == 1:
            return None, partition_path(device_path, 1)
        return partition_path(device_path, 1), partition_path(device_path, 2)

    def _partition_root_disk(self, desired_swap_size: int | None) -> tuple[str | None, str]:
        root_partition = self._real_root_partition()
        root_disk, root_index = split_partition_path(root_partition)

        try:
            remaining = self.root_partitioner.get_device_size_in_bytes(root_disk)
        except StorageError as error:
            raise DiskSetupError("Getting root device remaining size", str(error)) from error
        if remaining < MIN_ROOT_EPHEMERAL_SPACE:
            raise InsufficientSpaceError(root_disk, remaining, MIN_ROOT_EPHEMERAL_SPACE)

        plan = self._plan(remaining, desired_swap_size)
        self._log.info(f"Using {remaining} free bytes on root disk {root_disk}: {plan}")
        try:
            self.root_partitioner.partition(root_disk, plan)
        except StorageError as error:
            raise PartitionError(root_disk, str(error), stage="Partitioning root device") from error

        if len(plan) == 1:
            return None, partition_path(root_disk, root_index + 1)
        return (
            partition_path(root_disk, root_index + 1),
            partition_path(root_disk, root_index + 2),
        )

    def _scrub_ephemeral_data(self, data_dir: str) -> None:
        stemcell_version_path = os.path.join(self.dirs.etc_dir(), "stemcell_version")
        agent_version_path = os.path.join(data_dir, ".bosh", "agent_version")

        try:
            with open(stemcell_version_path, encoding="utf-8") as handle:
                stemcell_version = handle.read()
        except OSError as error:
            raise DiskSetupError("Reading stemcell version file", str(error)) from error

        agent_version = None
        if os.path.exists(agent_version_path):
            try:
                with open(agent_version_path, encoding="utf-8") as handle:
                    agent_version = handle.read()
            except OSError as error:
                raise DiskSetupError("Reading agent version file", str(error)) from error

        if agent_version == stemcell_version:
            return

        self._log.warning(
            f"Scrubbing {data_dir}: agent version {agent_version!r} "
            f"!= stemcell version {stemcell_version!r}"
        )
        try:
            for entry in os.listdir(data_dir):
                entry_path = os.path.join(data_dir, entry)
                if os.path.isdir(entry_path) and not os.path.islink(entry_path):
                    shutil.rmtree(entry_path)
                else:
                    os.remove(entry_path)
        except OSError as error:
            raise DiskSetupError(f"Removing contents of '{data_dir}'", str(error)) from error

        try:
            os.makedirs(os.path.dirname(agent_version_path), exist_ok=True)
            with open(agent_version_path, "w", encoding="utf-8") as handle:
                handle.write(stemcell_version)
        except OSError as error:
            raise DiskSetupError("Writing agent version file", str(error)) from error

    def get_ephemeral_disk_path(self, disk: DiskSettings) -> str:
        """Real path of the ephemeral disk, or "" when it cannot be resolved."""
        try:
            return self.resolver.resolve(disk)
        except ResolutionError as error:
            self._log.warning(f"Ephemeral disk {disk.id} not resolvable: {error}")
            return ""

    # ------------------------------------------------------------------
    # Root disk
    # ------------------------------------------------------------------

    def _real_root_partition(self) -> str:
        root_partition = find_root_partition(self.mounter.searcher)
        try:
            return self.runner.run("readlink", "-f", root_partition).stdout.strip()
        except CommandExecutionError as error:
            raise DiskSetupError("Resolving root partition path", str(error)) from error

    def setup_root_disk(self, ephemeral_disk_path: str | None) -> None:
        """Grow the root partition to fill its disk, then its filesystem."""
        if self.options.skip_disk_setup:
            return
        if not ephemeral_disk_path:
            self._log.info("No ephemeral disk given, not growing the root disk")
            return
        if not self.runner.exists("growpart"):
            self._log.warning("growpart not found, not growing the root disk")
            return

        root_partition = self._real_root_partition()
        root_disk, root_index = split_partition_path(root_partition)
        try:
            self.runner.run("growpart", root_disk, str(root_index))
        except CommandExecutionError as error:
            raise DiskSetupError(
                f"Growing root partition '{root_partition}'", str(error)
            ) from error
        try:
            self.runner.run("resize2fs", "-f", root_partition)
        except CommandExecutionError as error:
            raise DiskSetupError(
                f"Resizing root filesystem on '{root_partition}'", str(error)
            ) from error
        self._log.info(f"Grew root partition {root_partition}")

    # ------------------------------------------------------------------
    # Raw ephemeral disks
    # ------------------------------------------------------------------

    def setup_raw_ephemeral_disks(self, disks: Sequence[DiskSettings]) -> None:
        """Give every raw disk without a partition table one GPT partition."""
        if self.options.skip_disk_setup:
            return

        for index, disk in enumerate(disks):
            device = self.resolver.resolve(disk)
            if not self._needs_label(device):
                self._log.info(f"Raw disk {device} already partitioned, skipping")
                continue
            try:
                self.runner.run(
                    "parted", "-s", device,
                    "mklabel", "gpt",
                    "unit", "%",
                    "mkpart", f"raw-ephemeral-{index}", "0", "100",
                )
            except CommandExecutionError as error:
                raise PartitionError(device, str(error), stage="Labeling raw disk") from error
            self._log.info(f"Labeled raw disk {device} as raw-ephemeral-{index}")

    def _needs_label(self, device: str) -> bool:
        try:
            result = self.runner.run("parted", "-s", device, "p")
            stdout, stderr = result.stdout, result.stderr
        except CommandExecutionError as error:
            if UNRECOGNISED_DISK_LABEL not in error.stdout + error.stderr:
                raise PartitionError(
                    device, str(error), stage="Probing partition table of"
                ) from error
            return True

        if UNRECOGNISED_DISK_LABEL in stdout + stderr:
            return True
        table = _PARTED_TABLE.search(stdout)
        if table and table.group(1) == "loop":
            return True
        return not _PARTED_ENTRY.search(stdout)

    # ------------------------------------------------------------------
    # Persistent disks
    # ------------------------------------------------------------------

    def _persistent_partition(self, real_path: str) -> str:
        if self.options.use_preformatted_persistent_disk:
            return real_path
        return partition_path(real_path, 1)

    def is_persistent_disk_mountable(self, disk: DiskSettings) -> bool:
        """Whether the disk carries at least one partition."""
        try:
            device = self.resolver.resolve(disk)
        except ResolutionTimeout:
            return False

        try:
            output = self.runner.run("sfdisk", "-d", device).stdout
        except CommandExecutionError as error:
            if any(marker in error.stdout + error.stderr for marker in _NO_PARTITION_TABLE):
                return False
            raise DiskSetupError(f"Reading partition table of '{device}'", str(error)) from error
        return bool(_SFDISK_ENTRY.search(output))

    def is_persistent_disk_mounted(self, disk: DiskSettings) -> bool:
        try:
            device = self.resolver.resolve(disk)
        except ResolutionTimeout:
            return False
        return self.mounter.is_mounted(self._persistent_partition(device))

    def mount_persistent_disk(self, disk: DiskSettings, mount_point: str) -> None:
        """Partition, format and mount a persistent disk.

        When another device already occupies ``mount_point`` the disk goes to
        the migration target directory instead, ready for
        :meth:`migrate_persistent_disk`.
        """
        with operation_context("mount_persistent_disk", disk_id=disk.id) as log:
            try:
                real_path = self.resolver.resolve(disk)
            except ResolutionError as error:
                raise DiskSetupError("Getting real device path", str(error)) from error

            target_partition = self._persistent_partition(real_path)
            mounted_device, is_mount_point = self.mounter.is_mount_point(mount_point)
            if is_mount_point:
                if mounted_device == target_partition:
                    log.info(f"{target_partition} already mounted at {mount_point}")
                    return
                mount_point = self.dirs.store_migration_dir()
                log.info(
                    f"{mounted_device} occupies the store, mounting {target_partition} "
                    f"at {mount_point}"
                )

            try:
                os.makedirs(mount_point, mode=PERSISTENT_DIR_MODE, exist_ok=True)
                os.chmod(mount_point, PERSISTENT_DIR_MODE)
            except OSError as error:
                raise DiskSetupError(
                    f"Creating directory '{mount_point}'", str(error)
                ) from error

            if not self.options.use_preformatted_persistent_disk:
                fs_name = disk.filesystem_type or ""
                fs_type = _SUPPORTED_PERSISTENT_FS.get(fs_name)
                if fs_type is None:
                    raise UnsupportedFilesystemError(fs_name)
                partitioner = partitioner_for(disk.partitioner, self.partitioners)
                partitioner.partition(
                    real_path, [Partition(size_in_bytes=0, type=PartitionType.LINUX)]
                )
                self.formatter.format(target_partition, fs_type)

            self.mounter.mount(target_partition, mount_point, *disk.mount_options)

            managed_disk.write_managed_disk_id(self.dirs.bosh_dir(), disk.id)

    def unmount_persistent_disk(self, disk: DiskSettings) -> bool:
        """Returns True when unmounted now, False when it was not mounted."""
        try:
            real_path = self.resolver.resolve(disk)
        except ResolutionTimeout:
            self._log.info(f"Disk {disk.id} not present, treating as unmounted")
            return False
        return self.mounter.unmount(self._persistent_partition(real_path))

    def migrate_persistent_disk(self, from_mount_point: str, to_mount_point: str) -> None:
        """Copy ``from_mount_point`` onto ``to_mount_point`` and swap them."""
        with operation_context(
            "migrate_persistent_disk", source=from_mount_point, target=to_mount_point
        ) as log:
            source_partition, _ = self.mounter.is_mount_point(from_mount_point)

            self.mounter.remount_as_readonly(from_mount_point)
            try:
                self.runner.run(
                    "sh", "-c",
                    f"(tar -C {shlex.quote(from_mount_point)} -cf - .) | "
                    f"(tar -C {shlex.quote(to_mount_point)} -xpf -)",
                )
            except CommandExecutionError as error:
                raise DiskSetupError("Copying files from old disk to new disk", str(error)) from error

            self.mounter.unmount(from_mount_point)
            self.mounter.remount(to_mount_point, from_mount_point)

            if self.options.device_path_resolution_type in MULTIPATH_RESOLUTION_TYPES:
                self._flush_multipath(source_partition)
            log.info(f"Migrated {from_mount_point} onto new disk")

    def _flush_multipath(self, source_partition: str) -> None:
        try:
            source_disk, _ = split_partition_path(source_partition)
        except ValueError:
            source_disk = source_partition
        alias = os.path.basename(source_disk)

        try:
            topology = self.runner.run("multipath", "-ll").stdout
        except CommandExecutionError as error:
            raise DiskSetupError("Listing multipath devices", str(error)) from error

        for line in topology.splitlines():
            fields = line.split()
            if fields and fields[0] == alias:
                try:
                    self.runner.run("multipath", "-f", alias)
                except CommandExecutionError as error:
                    raise DiskSetupError(
                        f"Flushing multipath device '{alias}'", str(error)
                    ) from error
                self._log.info(f"Flushed multipath device {alias}")
                return
        raise DiskSetupError(
            "Flushing multipath device", f"no multipath alias for {source_partition}"
        )

    def associate_disk(self, name: str, disk: DiskSettings) -> None:
        """Point ``<base>/instance/disks/<name>`` at the disk's real path."""
        device = self.resolver.resolve(disk)
        link = os.path.join(self.dirs.disks_dir(), name)
        try:
            os.makedirs(self.dirs.disks_dir(), exist_ok=True)
            if os.path.lexists(link):
                os.remove(link)
            os.symlink(device, link)
        except OSError as error:
            raise ConfigWriteError(link, str(error), stage="Associating disk") from error
