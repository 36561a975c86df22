"""Exceptions raised while driving the monitoring daemon.

Exception Hierarchy:
    SupervisorError (base)
        ├── MonitClientError
        ├── ServiceActionError
        ├── ReloadConvergenceTimeout
        ├── StopConvergenceTimeout
        ├── ServiceErroredError
        └── AlertListenerError
"""

from __future__ import annotations

from typing import Sequence

from nodeprep.exceptions import AgentError


class SupervisorError(AgentError):
    """Base exception for process supervision."""


class MonitClientError(SupervisorError):
    """Talking to the monit HTTP interface failed."""


class ServiceActionError(SupervisorError):
    """A start, stop or unmonitor request for a service failed."""

    def __init__(self, action: str, service: str, reason: str):
        self.action = action
        self.service = service
        self.reason = reason
        super().__init__(f"{action.capitalize()} service {service}: {reason}")


class ReloadConvergenceTimeout(SupervisorError):
    """monit never reported a new incarnation after reloading."""

    def __init__(self, before: int, after: int):
        self.before = before
        self.after = after
        super().__init__(f"Failed to reload monit: before={before} after={after}")


class StopConvergenceTimeout(SupervisorError):
    """Services were still running or pending when the stop deadline passed."""

    def __init__(self, services: Sequence[str], timeout_seconds: float):
        self.services = list(services)
        self.timeout_seconds = timeout_seconds
        minutes = timeout_seconds / 60
        super().__init__(
            f"Timed out waiting for services '{', '.join(self.services)}' "
            f"to stop after {minutes:g} minutes"
        )


class ServiceErroredError(SupervisorError):
    """A service reported an error while being stopped."""

    def __init__(self, service: str, message: str):
        self.service = service
        self.message = message
        super().__init__(
            f"Stopping service '{service}' errored with message '{message}'"
        )


class AlertListenerError(SupervisorError):
    """The SMTP alert listener could not be started."""

    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Starting alert listener on {host}:{port}: {reason}")
