"""Tests for storage/partition.py - sfdisk, parted and root partitioners."""

import pytest

from nodeprep.domain import GIB, MIB, Partition, PartitionType
from nodeprep.storage import partition as partition_module
from nodeprep.storage.disk_layout import calculate_ephemeral_partitions
from nodeprep.storage.exceptions import PartitionError
from nodeprep.storage.partition import (
    ExistingPartition,
    PartedPartitioner,
    RootDevicePartitioner,
    SfdiskPartitioner,
    parse_parted_machine_output,
    partitioner_for,
    plan_matches,
    runs_to_end,
)

SWAP_AND_DATA = [
    Partition(size_in_bytes=2 * GIB, type=PartitionType.SWAP),
    Partition(size_in_bytes=8 * GIB, type=PartitionType.LINUX),
]

SFDISK_DUMP = """label: dos
label-id: 0x1234abcd
device: /dev/sdb
unit: sectors

/dev/sdb1 : start=        2048, size=     4194304, type=82
/dev/sdb2 : start=     4196352, size=    16777216, type=83
"""

PARTED_ROOT = """BYT;
/dev/vda:21474836480B:virtblk:512:512:msdos:Virtio Block Device:;
1:1048576B:3222273023B:3221225472B:ext4::boot;
"""


class TestDeviceSize:
    """Tests for device_size()."""

    def test_reads_lsblk_bytes(self, fake_runner):
        fake_runner.add_result("lsblk -b -d -n -o SIZE /dev/sdb", stdout="10737418240\n")

        assert partition_module.device_size(fake_runner, "/dev/sdb") == 10 * GIB

    def test_unexpected_output(self, fake_runner):
        fake_runner.add_result("lsblk -b -d -n -o SIZE /dev/sdb", stdout="n/a\n")

        with pytest.raises(PartitionError, match="Getting device size"):
            partition_module.device_size(fake_runner, "/dev/sdb")


class TestPlanMatches:
    """Tests for plan_matches()."""

    def test_matching_within_tolerance(self):
        existing = [
            ExistingPartition(1, MIB, 2 * GIB + 512 * 1024, PartitionType.SWAP),
            ExistingPartition(2, 2 * GIB, 8 * GIB - MIB, PartitionType.LINUX),
        ]
        assert plan_matches(existing, SWAP_AND_DATA) is True

    def test_rest_of_disk_matches_any_size(self):
        existing = [ExistingPartition(1, MIB, 123 * GIB, PartitionType.LINUX)]
        assert plan_matches(existing, [Partition(0, PartitionType.LINUX)]) is True

    def test_type_mismatch(self):
        existing = [
            ExistingPartition(1, MIB, 2 * GIB, PartitionType.LINUX),
            ExistingPartition(2, 2 * GIB, 8 * GIB, PartitionType.LINUX),
        ]
        assert plan_matches(existing, SWAP_AND_DATA) is False

    def test_count_mismatch(self):
        assert plan_matches([], SWAP_AND_DATA) is False


class TestSfdiskPartitioner:
    """Tests for SfdiskPartitioner."""

    def test_writes_script(self, fake_runner):
        """Test an unpartitioned disk gets an sfdisk script."""
        fake_runner.add_result("sfdisk -d /dev/sdb", error=True, stderr="does not contain a recognized partition table")

        SfdiskPartitioner(fake_runner).partition("/dev/sdb", SWAP_AND_DATA)

        assert fake_runner.commands[-1] == ["sfdisk", "/dev/sdb"]
        assert fake_runner.stdins[-1] == ",2048M,S\n,,L\n"

    @pytest.mark.parametrize("swap_size", [None, 0])
    def test_ephemeral_plan_fits_on_disk(self, fake_runner, swap_size):
        """Test sized entries plus the 1 MiB lead-in stay within the disk."""
        disk_size = 10 * GIB
        plan = calculate_ephemeral_partitions(disk_size, lambda: 2 * GIB, swap_size)
        fake_runner.add_result("sfdisk -d /dev/sdb", error=True)

        SfdiskPartitioner(fake_runner).partition("/dev/sdb", plan)

        sizes = [line.split(",")[1] for line in fake_runner.stdins[-1].splitlines()]
        assert sizes[-1] == ""
        requested = sum(int(size.rstrip("M")) for size in sizes[:-1])
        assert 1 + requested < disk_size // MIB

    def test_rest_of_disk_partition(self, fake_runner):
        """Test a zero-size partition leaves the size field empty."""
        fake_runner.add_result("sfdisk -d /dev/sdc", error=True)

        SfdiskPartitioner(fake_runner).partition("/dev/sdc", [Partition(0, PartitionType.LINUX)])

        assert fake_runner.stdins[-1] == ",,L\n"

    def test_skips_matching_layout(self, fake_runner):
        """Test nothing is written when the table already matches."""
        fake_runner.add_result("sfdisk -d /dev/sdb", stdout=SFDISK_DUMP)

        SfdiskPartitioner(fake_runner).partition("/dev/sdb", SWAP_AND_DATA)

        assert fake_runner.commands == [["sfdisk", "-d", "/dev/sdb"]]

    def test_existing_partitions_parsed(self, fake_runner):
        fake_runner.add_result("sfdisk -d /dev/sdb", stdout=SFDISK_DUMP)

        existing = SfdiskPartitioner(fake_runner).existing_partitions("/dev/sdb")

        assert [p.type for p in existing] == [PartitionType.SWAP, PartitionType.LINUX]
        assert existing[0].size_in_bytes == 2 * GIB
        assert existing[1].start_in_bytes == 4196352 * 512

    def test_failure_raises_partition_error(self, fake_runner):
        fake_runner.add_result("sfdisk -d /dev/sdb", error=True)
        fake_runner.add_result("sfdisk /dev/sdb", error=True, stderr="device busy")

        with pytest.raises(PartitionError) as exc_info:
            SfdiskPartitioner(fake_runner).partition("/dev/sdb", SWAP_AND_DATA)

        assert exc_info.value.device == "/dev/sdb"
        assert "device busy" in str(exc_info.value)


class TestPartedPartitioner:
    """Tests for PartedPartitioner."""

    def test_creates_gpt_layout(self, fake_runner):
        fake_runner.add_result("parted -m -s /dev/sdb unit B print", error=True)

        PartedPartitioner(fake_runner).partition("/dev/sdb", SWAP_AND_DATA)

        assert fake_runner.commands[1] == ["parted", "-s", "/dev/sdb", "mklabel", "gpt"]
        assert fake_runner.commands[2] == [
            "parted", "-s", "/dev/sdb", "unit", "MiB",
            "mkpart", "nodeprep-0", "linux-swap", "1MiB", "2049MiB",
        ]
        assert fake_runner.commands[3] == [
            "parted", "-s", "/dev/sdb", "unit", "MiB",
            "mkpart", "nodeprep-1", "ext4", "2049MiB", "100%",
        ]

    def test_single_partition_fills_disk(self, fake_runner):
        fake_runner.add_result("parted -m -s /dev/sdb unit B print", error=True)

        PartedPartitioner(fake_runner).partition("/dev/sdb", [Partition(0, PartitionType.LINUX)])

        assert fake_runner.commands[-1][-2:] == ["1MiB", "100%"]


class TestParsePartedMachineOutput:
    """Tests for parse_parted_machine_output()."""

    def test_parses_header_and_partitions(self):
        size, table, partitions = parse_parted_machine_output(PARTED_ROOT)

        assert size == 21474836480
        assert table == "msdos"
        assert partitions == [
            ExistingPartition(1, 1048576, 3221225472, PartitionType.LINUX)
        ]

    def test_empty_output(self):
        with pytest.raises(ValueError):
            parse_parted_machine_output("")


class TestRootDevicePartitioner:
    """Tests for RootDevicePartitioner."""

    def test_remaining_size_after_last_partition(self, fake_runner):
        fake_runner.add_result("parted -m -s /dev/vda unit B print", stdout=PARTED_ROOT)

        remaining = RootDevicePartitioner(fake_runner).get_device_size_in_bytes("/dev/vda")

        # last partition ends at 3 GiB + 1 MiB, already MiB aligned
        assert remaining == 21474836480 - (3 * GIB + MIB)

    def test_creates_partitions_after_root(self, fake_runner):
        fake_runner.add_result("parted -m -s /dev/vda unit B print", stdout=PARTED_ROOT)

        RootDevicePartitioner(fake_runner).partition(
            "/dev/vda",
            [Partition(GIB, PartitionType.SWAP), Partition(0, PartitionType.LINUX)],
        )

        start = 3 * GIB + MIB
        assert fake_runner.commands[1] == [
            "parted", "-s", "/dev/vda", "unit", "B",
            "mkpart", "primary", "linux-swap", str(start), str(start + GIB - 1),
        ]
        assert fake_runner.commands[2] == [
            "parted", "-s", "/dev/vda", "unit", "B",
            "mkpart", "primary", "ext4", str(start + GIB), str(21474836480 - 1),
        ]


class TestPartitionerFor:
    """Tests for partitioner_for()."""

    def test_default_for_empty_and_none(self):
        default = object()
        registry = {"": default, "parted": object()}

        assert partitioner_for(None, registry) is default
        assert partitioner_for("", registry) is default

    def test_by_name(self):
        parted = object()

        assert partitioner_for("parted", {"": object(), "parted": parted}) is parted

    def test_unknown_name(self):
        with pytest.raises(PartitionError, match="unknown partitioner 'fdisk'"):
            partitioner_for("fdisk", {"": object()})


class TestRunsToEnd:
    """Tests for runs_to_end()."""

    def test_last_entry_always_runs_to_end(self):
        assert runs_to_end(SWAP_AND_DATA, 0) is False
        assert runs_to_end(SWAP_AND_DATA, 1) is True

    def test_zero_size_entry(self):
        assert runs_to_end([Partition(0, PartitionType.LINUX)], 0) is True
