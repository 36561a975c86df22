"""Base exceptions shared by the disk and supervisor packages.

Exception Hierarchy:
    AgentError (base)
        ├── ConfigWriteError
        ├── StorageError            (nodeprep.storage.exceptions)
        └── SupervisorError         (nodeprep.supervisor.exceptions)

Every stage failure wraps its cause with ``raise ... from err`` so the
original error stays reachable through ``__cause__``.
"""


class AgentError(Exception):
    """Base exception for all agent operations."""


class ConfigWriteError(AgentError):
    """A configuration or state file could not be read or written."""

    def __init__(self, path: str, reason: str, stage: str = "Writing to job config file"):
        self.path = path
        self.reason = reason
        self.stage = stage
        super().__init__(f"{stage} '{path}': {reason}")
