"""Tests for storage/format.py - filesystem and swap creation."""

import pytest

from nodeprep.domain import FileSystemType
from nodeprep.storage.exceptions import FormatError
from nodeprep.storage.format import Formatter

BLKID = "blkid -p -o value -s TYPE /dev/sdb2"


class TestFormatter:
    """Tests for Formatter.format()."""

    @pytest.mark.parametrize(
        "fs_type,command",
        [
            (FileSystemType.SWAP, ["mkswap", "/dev/sdb2"]),
            (FileSystemType.EXT4, ["mkfs.ext4", "-F", "/dev/sdb2"]),
            (FileSystemType.XFS, ["mkfs.xfs", "-f", "/dev/sdb2"]),
            (FileSystemType.DEFAULT, ["mkfs.ext4", "-F", "/dev/sdb2"]),
        ],
    )
    def test_mkfs_commands(self, fake_runner, fs_type, command):
        """Test each filesystem type maps to its mkfs tool."""
        fake_runner.add_result(BLKID, error=True, exit_code=2)

        Formatter(fake_runner).format("/dev/sdb2", fs_type)

        assert fake_runner.commands[-1] == command

    def test_skips_already_formatted(self, fake_runner):
        """Test an existing filesystem of the same type is kept."""
        fake_runner.add_result(BLKID, stdout="ext4\n")

        Formatter(fake_runner).format("/dev/sdb2", FileSystemType.EXT4)

        assert fake_runner.commands == [BLKID.split()]

    def test_reformats_different_type(self, fake_runner):
        """Test a partition with another filesystem is reformatted."""
        fake_runner.add_result(BLKID, stdout="ext4\n")

        Formatter(fake_runner).format("/dev/sdb2", FileSystemType.XFS)

        assert fake_runner.commands[-1] == ["mkfs.xfs", "-f", "/dev/sdb2"]

    def test_failure_names_filesystem(self, fake_runner):
        """Test the error message names the filesystem type."""
        fake_runner.add_result(BLKID, error=True, exit_code=2)
        fake_runner.add_result("mkfs.xfs -f /dev/sdb2", error=True, stderr="Oh noes!")

        with pytest.raises(FormatError) as exc_info:
            Formatter(fake_runner).format("/dev/sdb2", FileSystemType.XFS)

        assert str(exc_info.value).startswith("Formatting partition with xfs: ")
        assert "Oh noes!" in str(exc_info.value)
        assert exc_info.value.partition == "/dev/sdb2"
