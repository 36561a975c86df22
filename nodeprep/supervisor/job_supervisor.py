"""Job supervision through monit.

Operations:
    - reload(): reload monit and wait for a new incarnation
    - start() / stop() / unmonitor(): act on every service in the job group
    - status(): one aggregated status for all jobs
    - add_job() / remove_all_jobs(): manage per-job monit config fragments
    - monitor_job_failures(): receive monit alert mails

Implementation Details:
    - All waiting goes through an injected Clock so tests never sleep
    - stop() has an absolute 10 minute deadline checked before every
      status query and every sleep
    - monit's reload exit status is unreliable, only the incarnation counts
"""

from __future__ import annotations

import os
import shutil
from typing import Callable, Protocol

from nodeprep.domain import FailureAlert, JobStatus, MonitStatus, ReloadOptions
from nodeprep.exceptions import ConfigWriteError
from nodeprep.logging import LoggerFactory, operation_context
from nodeprep.polling import Clock, Deadline, SystemClock
from nodeprep.storage.commands import CommandRunner
from nodeprep.storage.exceptions import CommandExecutionError
from nodeprep.supervisor.alerts import AlertListenerHandle, start_alert_listener
from nodeprep.supervisor.exceptions import (
    MonitClientError,
    ReloadConvergenceTimeout,
    ServiceErroredError,
    StopConvergenceTimeout,
)

JOB_GROUP = "vcap"
STOP_TIMEOUT_SECONDS = 10 * 60
STOP_POLL_INTERVAL_SECONDS = 0.5


class MonitApi(Protocol):
    def status(self) -> MonitStatus:
        ...

    def services_in_group(self, group: str) -> list[str]:
        ...

    def start_service(self, service: str) -> None:
        ...

    def stop_service(self, service: str) -> None:
        ...

    def unmonitor_service(self, service: str) -> None:
        ...


class MonitJobSupervisor:
    def __init__(
        self,
        client: MonitApi,
        runner: CommandRunner,
        jobs_dir: str,
        job_failures_server_port: int,
        reload_options: ReloadOptions | None = None,
        clock: Clock | None = None,
    ):
        self.client = client
        self.runner = runner
        self.jobs_dir = jobs_dir
        self.job_failures_server_port = job_failures_server_port
        self.reload_options = reload_options or ReloadOptions()
        self.clock = clock or SystemClock()
        self._log = LoggerFactory.for_supervisor()
        self._poll_log = LoggerFactory.for_supervisor(poll=True)

    def _incarnation(self) -> int:
        try:
            return self.client.status().incarnation
        except MonitClientError as error:
            raise MonitClientError(f"Getting monit incarnation: {error}") from error

    def reload(self) -> None:
        """Reload monit, returning once it reports a new incarnation.

        Raises:
            ReloadConvergenceTimeout: the incarnation never changed
            MonitClientError: monit status could not be read
        """
        options = self.reload_options
        before = self._incarnation()
        after = before

        for attempt in range(1, options.max_tries + 1):
            try:
                self.runner.run("monit", "reload")
            except CommandExecutionError as error:
                self._log.debug(f"monit reload attempt {attempt} reported: {error}")

            for _ in range(options.max_check_tries):
                after = self._incarnation()
                if after != before:
                    self._log.info(f"monit reloaded: incarnation {before} -> {after}")
                    return
                self._poll_log.trace(f"monit incarnation still {after}")
                self.clock.sleep(options.delay_between_check_tries)

        raise ReloadConvergenceTimeout(before, after)

    def start(self) -> None:
        for service in self.client.services_in_group(JOB_GROUP):
            self._log.debug(f"Starting service {service}")
            self.client.start_service(service)

    def stop(self) -> None:
        """Stop every job and wait until none is monitored or pending.

        Raises:
            ServiceErroredError: a service reported an error while stopping
            StopConvergenceTimeout: services still pending after 10 minutes
        """
        with operation_context("stop_jobs") as log:
            services = self.client.services_in_group(JOB_GROUP)
            for service in services:
                log.debug(f"Stopping service '{service}'")
                self.client.stop_service(service)

            deadline = Deadline(self.clock, STOP_TIMEOUT_SECONDS)
            still_running: list[str] = []
            while True:
                if deadline.expired():
                    raise StopConvergenceTimeout(still_running, STOP_TIMEOUT_SECONDS)

                status = self.client.status()
                still_running = []
                for service in status.services_in_group(JOB_GROUP):
                    if service.errored:
                        raise ServiceErroredError(service.name, service.status_message)
                    if service.monitored or service.pending:
                        still_running.append(service.name)

                if not still_running:
                    return

                self._poll_log.trace(f"Waiting for services to stop: {still_running}")
                if deadline.expired():
                    raise StopConvergenceTimeout(still_running, STOP_TIMEOUT_SECONDS)
                deadline.sleep(STOP_POLL_INTERVAL_SECONDS)

    def unmonitor(self) -> None:
        for service in self.client.services_in_group(JOB_GROUP):
            self._log.debug(f"Unmonitoring service {service}")
            self.client.unmonitor_service(service)

    def status(self) -> str:
        """Aggregated job status: running, failing, starting or unknown."""
        try:
            status = self.client.status()
        except MonitClientError as error:
            self._log.warning(f"Getting monit status: {error}")
            return JobStatus.UNKNOWN.value

        result = JobStatus.RUNNING
        for service in status.services_in_group(JOB_GROUP):
            if service.status == JobStatus.STARTING.value:
                return JobStatus.STARTING.value
            if not service.monitored or service.status != JobStatus.RUNNING.value:
                result = JobStatus.FAILING
        return result.value

    def add_job(self, job_name: str, job_index: int, config_path: str) -> None:
        """Install a job's monit config as ``NNNN_<job>.monitrc``.

        The zero-padded index fixes the order monit loads fragments in.
        """
        target = os.path.join(self.jobs_dir, f"{job_index:04d}_{job_name}.monitrc")
        try:
            with open(config_path, encoding="utf-8") as handle:
                content = handle.read()
        except OSError as error:
            raise ConfigWriteError(
                config_path, str(error), stage="Reading job config from file"
            ) from error

        try:
            os.makedirs(self.jobs_dir, exist_ok=True)
            with open(target, "w", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as error:
            raise ConfigWriteError(target, str(error)) from error
        self._log.info(f"Added job {job_name} as {os.path.basename(target)}")

    def remove_all_jobs(self) -> None:
        try:
            shutil.rmtree(self.jobs_dir)
        except FileNotFoundError:
            return
        except OSError as error:
            raise ConfigWriteError(
                self.jobs_dir, str(error), stage="Removing job config dir"
            ) from error

    def monitor_job_failures(
        self, handler: Callable[[FailureAlert], None]
    ) -> AlertListenerHandle:
        """Start the alert listener; raises only if it cannot bind."""
        return start_alert_listener(handler, port=self.job_failures_server_port)
