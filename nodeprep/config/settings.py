"""Settings storage for agent configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nodeprep.domain import ReloadOptions
from nodeprep.logging import LoggerFactory


SETTINGS_PATH = Path(
    os.environ.get(
        "NODEPREP_SETTINGS_PATH",
        Path.home() / ".config" / "nodeprep" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BASE_DIR = "/var/vcap"
DEFAULT_JOB_FAILURES_SERVER_PORT = 2825
DEFAULT_MONIT_PORT = 2822
DEFAULT_DEVICE_RESOLUTION_TIMEOUT = 60.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "base_dir": DEFAULT_BASE_DIR,
    "skip_disk_setup": False,
    "create_partition_if_no_ephemeral_disk": False,
    "scrub_ephemeral_disk": False,
    "use_preformatted_persistent_disk": False,
    "device_path_resolution_type": "",
    "job_failures_server_port": DEFAULT_JOB_FAILURES_SERVER_PORT,
    "monit_host": "127.0.0.1",
    "monit_port": DEFAULT_MONIT_PORT,
    "monit_credentials_path": None,
    "reload_max_tries": 3,
    "reload_max_check_tries": 10,
    "reload_delay_between_check_tries": 1.0,
    "tmp_dir": None,
    "device_resolution_timeout": DEFAULT_DEVICE_RESOLUTION_TIMEOUT,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


@dataclass(frozen=True)
class AgentOptions:
    """Typed view of the settings consumed by the disk and supervisor components."""

    base_dir: str = DEFAULT_BASE_DIR
    skip_disk_setup: bool = False
    create_partition_if_no_ephemeral_disk: bool = False
    scrub_ephemeral_disk: bool = False
    use_preformatted_persistent_disk: bool = False
    device_path_resolution_type: str = ""
    job_failures_server_port: int = DEFAULT_JOB_FAILURES_SERVER_PORT
    monit_host: str = "127.0.0.1"
    monit_port: int = DEFAULT_MONIT_PORT
    monit_credentials_path: str | None = None
    reload_options: ReloadOptions = field(default_factory=ReloadOptions)
    tmp_dir: str | None = None
    device_resolution_timeout: float = DEFAULT_DEVICE_RESOLUTION_TIMEOUT

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> "AgentOptions":
        merged = dict(DEFAULT_SETTINGS)
        merged.update(values)
        base_dir = str(merged["base_dir"])
        credentials = merged["monit_credentials_path"] or str(
            Path(base_dir) / "monit" / "monit.user"
        )
        return cls(
            base_dir=base_dir,
            skip_disk_setup=bool(merged["skip_disk_setup"]),
            create_partition_if_no_ephemeral_disk=bool(
                merged["create_partition_if_no_ephemeral_disk"]
            ),
            scrub_ephemeral_disk=bool(merged["scrub_ephemeral_disk"]),
            use_preformatted_persistent_disk=bool(
                merged["use_preformatted_persistent_disk"]
            ),
            device_path_resolution_type=str(merged["device_path_resolution_type"] or ""),
            job_failures_server_port=int(merged["job_failures_server_port"]),
            monit_host=str(merged["monit_host"]),
            monit_port=int(merged["monit_port"]),
            monit_credentials_path=credentials,
            reload_options=ReloadOptions(
                max_tries=int(merged["reload_max_tries"]),
                max_check_tries=int(merged["reload_max_check_tries"]),
                delay_between_check_tries=float(
                    merged["reload_delay_between_check_tries"]
                ),
            ),
            tmp_dir=merged["tmp_dir"],
            device_resolution_timeout=float(merged["device_resolution_timeout"]),
        )


class DirProvider:
    """Derives every well-known agent directory from the base directory."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def data_dir(self) -> str:
        return os.path.join(self.base_dir, "data")

    def store_dir(self) -> str:
        return os.path.join(self.base_dir, "store")

    def store_migration_dir(self) -> str:
        return os.path.join(self.base_dir, "store_migration_target")

    def bosh_dir(self) -> str:
        return os.path.join(self.base_dir, "bosh")

    def etc_dir(self) -> str:
        return os.path.join(self.bosh_dir(), "etc")

    def monit_jobs_dir(self) -> str:
        return os.path.join(self.base_dir, "monit", "job")

    def disks_dir(self) -> str:
        return os.path.join(self.base_dir, "instance", "disks")


def load_settings(path: Path | None = None) -> AgentOptions:
    """Load settings from JSON, merged over the defaults.

    A missing or unreadable file leaves the defaults in place.
    """
    path = path or SETTINGS_PATH
    settings_store.values = dict(DEFAULT_SETTINGS)
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LoggerFactory.for_system().warning(
                f"Ignoring unreadable settings file {path}: {error}"
            )
            data = None
        if isinstance(data, dict):
            settings_store.values.update(data)
    return AgentOptions.from_values(settings_store.values)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)