"""Partitioners for ephemeral, persistent and root devices.

Partitioners:
    SfdiskPartitioner:     default; writes an sfdisk script (MBR)
    PartedPartitioner:     ``parted`` with a GPT label, selected by name
    RootDevicePartitioner: appends partitions after the last existing one
                           on the root disk without touching it

Partition plans are lists of :class:`~nodeprep.domain.Partition`; a size of
0 means "the rest of the device". Sfdisk and parted skip repartitioning
when the existing table already matches the plan.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, Sequence

from nodeprep.domain import MIB, Partition, PartitionType
from nodeprep.logging import LoggerFactory
from nodeprep.storage.commands import CommandRunner
from nodeprep.storage.exceptions import CommandExecutionError, PartitionError

# Existing partitions within this many bytes of the plan count as matching
SIZE_TOLERANCE = MIB
SECTOR_SIZE = 512

_SFDISK_TYPES = {PartitionType.SWAP: "S", PartitionType.LINUX: "L"}
_SFDISK_TYPE_IDS = {"82": PartitionType.SWAP, "83": PartitionType.LINUX}
_PARTED_FS_HINTS = {PartitionType.SWAP: "linux-swap", PartitionType.LINUX: "ext4"}

_SFDISK_ENTRY = re.compile(
    r"^(?P<device>/dev/\S+)\s*:\s*start=\s*(?P<start>\d+),\s*size=\s*(?P<size>\d+),"
    r"\s*(?:type|Id)=\s*(?P<type>[0-9a-fA-F-]+)"
)


class Partitioner(Protocol):
    def get_device_size_in_bytes(self, device_path: str) -> int:
        ...

    def partition(self, device_path: str, partitions: Sequence[Partition]) -> None:
        ...


@dataclass(frozen=True)
class ExistingPartition:
    index: int
    start_in_bytes: int
    size_in_bytes: int
    type: PartitionType | None


def device_size(runner: CommandRunner, device_path: str) -> int:
    """Whole device size in bytes, from lsblk."""
    try:
        result = runner.run("lsblk", "-b", "-d", "-n", "-o", "SIZE", device_path)
    except CommandExecutionError as error:
        raise PartitionError(device_path, str(error), stage="Getting device size") from error
    try:
        return int(result.stdout.strip().splitlines()[0])
    except (ValueError, IndexError) as error:
        raise PartitionError(
            device_path, f"unexpected lsblk output {result.stdout!r}", stage="Getting device size"
        ) from error


def runs_to_end(partitions: Sequence[Partition], index: int) -> bool:
    """Whether partition ``index`` should take the rest of the device.

    The last entry always does: the first partition starts 1 MiB in, so a
    plan summing to the device size would otherwise overrun it.
    """
    return partitions[index].fills_device or index == len(partitions) - 1


def plan_matches(
    existing: Sequence[ExistingPartition], planned: Sequence[Partition]
) -> bool:
    """Whether an existing table already implements ``planned``."""
    if len(existing) != len(planned):
        return False
    for current, wanted in zip(existing, planned):
        if current.type is not None and current.type is not wanted.type:
            return False
        if wanted.fills_device:
            continue
        if abs(current.size_in_bytes - wanted.size_in_bytes) > SIZE_TOLERANCE:
            return False
    return True


class SfdiskPartitioner:
    """Default partitioner, driven by an ``sfdisk`` input script."""

    name = "sfdisk"

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self._log = LoggerFactory.for_disk(job_id="sfdisk")

    def get_device_size_in_bytes(self, device_path: str) -> int:
        return device_size(self.runner, device_path)

    def existing_partitions(self, device_path: str) -> list[ExistingPartition]:
        try:
            output = self.runner.run("sfdisk", "-d", device_path).stdout
        except CommandExecutionError:
            return []
        matches = [m for m in map(_SFDISK_ENTRY.match, output.splitlines()) if m]
        partitions = []
        for index, match in enumerate(matches, start=1):
            partitions.append(
                ExistingPartition(
                    index=index,
                    start_in_bytes=int(match.group("start")) * SECTOR_SIZE,
                    size_in_bytes=int(match.group("size")) * SECTOR_SIZE,
                    type=_SFDISK_TYPE_IDS.get(match.group("type").lower()),
                )
            )
        return partitions

    def partition(self, device_path: str, partitions: Sequence[Partition]) -> None:
        if plan_matches(self.existing_partitions(device_path), partitions):
            self._log.info(f"{device_path} already partitioned as requested, skipping")
            return

        script_lines = []
        for index, partition in enumerate(partitions):
            size = "" if runs_to_end(partitions, index) else f"{partition.size_in_bytes // MIB}M"
            script_lines.append(f",{size},{_SFDISK_TYPES[partition.type]}")
        script = "\n".join(script_lines) + "\n"

        self._log.info(f"Partitioning {device_path} with sfdisk: {script_lines}")
        try:
            self.runner.run("sfdisk", device_path, stdin=script)
        except CommandExecutionError as error:
            raise PartitionError(device_path, str(error)) from error


def parse_parted_machine_output(output: str) -> tuple[int, str, list[ExistingPartition]]:
    """Parse ``parted -m <dev> unit B print``.

    Returns:
        (device size in bytes, partition table type, partitions)
    """
    lines = [line.rstrip(";") for line in output.splitlines() if line.strip()]
    if lines and lines[0] == "BYT":
        lines = lines[1:]
    if not lines:
        raise ValueError("empty parted output")

    header = lines[0].split(":")
    disk_size = int(header[1].rstrip("B"))
    table = header[5] if len(header) > 5 else ""

    partitions = []
    for line in lines[1:]:
        fields = line.split(":")
        if len(fields) < 4 or not fields[0].isdigit():
            continue
        fs = fields[4] if len(fields) > 4 else ""
        if fs.startswith("linux-swap"):
            partition_type: PartitionType | None = PartitionType.SWAP
        elif fs:
            partition_type = PartitionType.LINUX
        else:
            partition_type = None
        partitions.append(
            ExistingPartition(
                index=int(fields[0]),
                start_in_bytes=int(fields[1].rstrip("B")),
                size_in_bytes=int(fields[3].rstrip("B")),
                type=partition_type,
            )
        )
    return disk_size, table, partitions


def _align_up(value: int, alignment: int = MIB) -> int:
    return -(-value // alignment) * alignment


class PartedPartitioner:
    """GPT partitioner using ``parted``."""

    name = "parted"

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self._log = LoggerFactory.for_disk(job_id="parted")

    def get_device_size_in_bytes(self, device_path: str) -> int:
        return device_size(self.runner, device_path)

    def existing_partitions(self, device_path: str) -> list[ExistingPartition]:
        try:
            output = self.runner.run("parted", "-m", "-s", device_path, "unit", "B", "print").stdout
            return parse_parted_machine_output(output)[2]
        except (CommandExecutionError, ValueError):
            return []

    def partition(self, device_path: str, partitions: Sequence[Partition]) -> None:
        if plan_matches(self.existing_partitions(device_path), partitions):
            self._log.info(f"{device_path} already partitioned as requested, skipping")
            return

        self._log.info(f"Partitioning {device_path} with parted")
        try:
            self.runner.run("parted", "-s", device_path, "mklabel", "gpt")
            start = MIB
            for index, partition in enumerate(partitions):
                if runs_to_end(partitions, index):
                    end = "100%"
                else:
                    end_bytes = start + _align_up(partition.size_in_bytes)
                    end = f"{end_bytes // MIB}MiB"
                self.runner.run(
                    "parted", "-s", device_path,
                    "unit", "MiB",
                    "mkpart", f"nodeprep-{index}", _PARTED_FS_HINTS[partition.type],
                    f"{start // MIB}MiB", end,
                )
                if not runs_to_end(partitions, index):
                    start = end_bytes
        except CommandExecutionError as error:
            raise PartitionError(device_path, str(error)) from error


class RootDevicePartitioner:
    """Adds partitions after the last partition of the root disk.

    ``get_device_size_in_bytes`` reports the free space left after the last
    partition rather than the whole disk, so that plans computed from it
    never overlap the root filesystem.
    """

    name = "root"

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self._log = LoggerFactory.for_disk(job_id="root-partitioner")

    def _layout(self, device_path: str) -> tuple[int, list[ExistingPartition]]:
        result = self.runner.run("parted", "-m", "-s", device_path, "unit", "B", "print")
        try:
            disk_size, _, partitions = parse_parted_machine_output(result.stdout)
        except (ValueError, IndexError) as error:
            raise PartitionError(
                device_path, f"unexpected parted output: {error}", stage="Reading partition table of"
            ) from error
        return disk_size, partitions

    def _first_free_byte(self, partitions: Sequence[ExistingPartition]) -> int:
        if not partitions:
            return MIB
        last = max(partitions, key=lambda p: p.start_in_bytes + p.size_in_bytes)
        return _align_up(last.start_in_bytes + last.size_in_bytes)

    def get_device_size_in_bytes(self, device_path: str) -> int:
        disk_size, partitions = self._layout(device_path)
        return max(0, disk_size - self._first_free_byte(partitions))

    def partition(self, device_path: str, partitions: Sequence[Partition]) -> None:
        try:
            disk_size, existing = self._layout(device_path)
            start = self._first_free_byte(existing)
            for partition in partitions:
                if partition.fills_device:
                    end = disk_size - 1
                else:
                    end = min(start + partition.size_in_bytes, disk_size) - 1
                self._log.info(
                    f"Creating {partition.type.value} partition on {device_path} "
                    f"from {start}B to {end}B"
                )
                self.runner.run(
                    "parted", "-s", device_path,
                    "unit", "B",
                    "mkpart", "primary", _PARTED_FS_HINTS[partition.type],
                    str(start), str(end),
                )
                start = _align_up(end + 1)
        except CommandExecutionError as error:
            raise PartitionError(device_path, str(error)) from error


def partitioner_for(name: str | None, partitioners: dict[str, Partitioner]) -> Partitioner:
    """Select a partitioner by name; "" and None select the default."""
    key = name or ""
    try:
        return partitioners[key]
    except KeyError:
        raise PartitionError(
            "", f"unknown partitioner {name!r}", stage="Selecting partitioner"
        ) from None
