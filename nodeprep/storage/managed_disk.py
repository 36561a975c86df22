"""Record of the persistent disk that was mounted last."""

from __future__ import annotations

import os
import tempfile

from nodeprep.exceptions import ConfigWriteError

MANAGED_DISK_SETTINGS_FILE = "managed_disk_settings.json"


def managed_disk_settings_path(bosh_dir: str) -> str:
    return os.path.join(bosh_dir, MANAGED_DISK_SETTINGS_FILE)


def write_managed_disk_id(bosh_dir: str, disk_id: str) -> None:
    """Atomically replace the record with ``disk_id``.

    Readers see either the previous id or the new one, never a partial file.
    """
    path = managed_disk_settings_path(bosh_dir)
    try:
        os.makedirs(bosh_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".managed_disk", dir=bosh_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(disk_id)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except OSError as error:
        raise ConfigWriteError(
            path, str(error), stage=f"Writing {MANAGED_DISK_SETTINGS_FILE}"
        ) from error


def read_managed_disk_id(bosh_dir: str) -> str | None:
    """Id of the last mounted disk, or None when nothing was recorded."""
    path = managed_disk_settings_path(bosh_dir)
    try:
        with open(path, encoding="utf-8") as handle:
            return handle.read()
    except FileNotFoundError:
        return None
    except OSError as error:
        raise ConfigWriteError(
            path, str(error), stage=f"Reading {MANAGED_DISK_SETTINGS_FILE}"
        ) from error
