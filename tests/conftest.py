"""
Pytest configuration and shared fixtures for nodeprep tests.

This module provides fakes for the command, clock, partition and monit
boundaries so that disk and supervisor logic runs without touching devices,
sleeping or talking to a real monit daemon.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence
from unittest.mock import Mock

import pytest

from nodeprep.config.settings import AgentOptions, DirProvider
from nodeprep.domain import (
    CommandResult,
    DiskSettings,
    JobService,
    MonitStatus,
    Mount,
    Partition,
)
from nodeprep.storage.disk_layout import DiskLayoutManager
from nodeprep.storage.exceptions import CommandExecutionError
from nodeprep.storage.format import Formatter
from nodeprep.storage.mount import Mounter


# ==============================================================================
# Command Runner Fakes
# ==============================================================================


class FakeCommandRunner:
    """Records commands and replays canned results keyed by the command line."""

    def __init__(self, available: Sequence[str] = ("growpart",)):
        self.commands: list[list[str]] = []
        self.stdins: list[str | None] = []
        self.results: dict[str, list] = {}
        self.available = set(available)
        self.tmp_dir = None

    def add_result(
        self,
        command: str,
        stdout: str = "",
        stderr: str = "",
        error: bool = False,
        exit_code: int = 1,
    ) -> None:
        """Queue a result for ``command``; the last one queued repeats."""
        if error:
            outcome = CommandExecutionError(command.split(), exit_code, stdout, stderr)
        else:
            outcome = CommandResult(stdout=stdout, stderr=stderr, exit_code=0)
        self.results.setdefault(command, []).append(outcome)

    def run(self, *command: str, stdin: str | None = None) -> CommandResult:
        self.commands.append(list(command))
        self.stdins.append(stdin)
        queued = self.results.get(" ".join(command))
        if not queued:
            return CommandResult(stdout="")
        outcome = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(outcome, CommandExecutionError):
            raise outcome
        return outcome

    def exists(self, name: str) -> bool:
        return name in self.available


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    """Fixture providing a recording command runner."""
    return FakeCommandRunner()


# ==============================================================================
# Clock Fakes
# ==============================================================================


class FakeClock:
    """Clock whose sleeps only advance a counter."""

    def __init__(self, start: float = 1000.0):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ==============================================================================
# Disk Layout Fixtures
# ==============================================================================


class FakePartitioner:
    """Partitioner that records plans instead of writing tables."""

    def __init__(self, size_in_bytes: int = 0):
        self.size_in_bytes = size_in_bytes
        self.size_error: Exception | None = None
        self.partition_error: Exception | None = None
        self.size_requests: list[str] = []
        self.calls: list[tuple[str, list[Partition]]] = []

    def get_device_size_in_bytes(self, device_path: str) -> int:
        self.size_requests.append(device_path)
        if self.size_error is not None:
            raise self.size_error
        return self.size_in_bytes

    def partition(self, device_path: str, partitions: Sequence[Partition]) -> None:
        self.calls.append((device_path, list(partitions)))
        if self.partition_error is not None:
            raise self.partition_error


class FakeResolver:
    def __init__(self, real_path: str = "/dev/sdf"):
        self.real_path = real_path
        self.error: Exception | None = None
        self.resolved: list[DiskSettings] = []

    def resolve(self, disk: DiskSettings) -> str:
        self.resolved.append(disk)
        if self.error is not None:
            raise self.error
        return self.real_path


@pytest.fixture
def dirs(tmp_path) -> DirProvider:
    return DirProvider(str(tmp_path / "vcap"))


@pytest.fixture
def disk_env(tmp_path, fake_runner):
    """Collaborators of a DiskLayoutManager, built lazily by ``disk_env.manager()``."""

    class DiskEnv:
        def __init__(self):
            self.dirs = DirProvider(str(tmp_path / "vcap"))
            self.options = AgentOptions(base_dir=self.dirs.base_dir)
            self.runner = fake_runner
            self.resolver = FakeResolver()
            self.mounter = Mock(spec=Mounter)
            self.mounter.searcher = Mock()
            self.mounter.searcher.search_mounts.return_value = [
                Mount(partition_path="rootfs", mount_point="/"),
                Mount(partition_path="/dev/vda1", mount_point="/"),
            ]
            self.mounter.is_mount_point.return_value = ("", False)
            self.formatter = Mock(spec=Formatter)
            self.default_partitioner = FakePartitioner(size_in_bytes=10 * 1024**3)
            self.parted_partitioner = FakePartitioner(size_in_bytes=10 * 1024**3)
            self.root_partitioner = FakePartitioner(size_in_bytes=5 * 1024**3)
            self.mem_total = 2 * 1024**3

        def manager(self, **option_overrides) -> DiskLayoutManager:
            return DiskLayoutManager(
                options=replace(self.options, **option_overrides),
                dirs=self.dirs,
                runner=self.runner,
                resolver=self.resolver,
                mounter=self.mounter,
                formatter=self.formatter,
                partitioners={
                    "": self.default_partitioner,
                    "sfdisk": self.default_partitioner,
                    "parted": self.parted_partitioner,
                },
                root_partitioner=self.root_partitioner,
                mem_total=lambda: self.mem_total,
            )

    return DiskEnv()


# ==============================================================================
# Monit Fakes
# ==============================================================================


def make_status(incarnation: int = 1, services: Sequence[JobService] = ()) -> MonitStatus:
    """Status where every given service belongs to the vcap group."""
    return MonitStatus(
        incarnation=incarnation,
        services=tuple(services),
        groups={"vcap": tuple(service.name for service in services)},
    )


@pytest.fixture
def status_factory():
    return make_status


@pytest.fixture
def mock_monit_client(mocker) -> Mock:
    """
    Fixture providing a mock monit client.

    Returns:
        Mock with services foo and bar in the vcap group, both running.
    """
    client = mocker.Mock()
    client.services_in_group.return_value = ["foo", "bar"]
    client.status.return_value = make_status(
        1, [JobService(name="foo"), JobService(name="bar")]
    )
    return client
