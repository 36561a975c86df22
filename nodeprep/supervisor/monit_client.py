"""HTTP client for monit's embedded web interface.

Provides status queries and per-service actions.
"""

from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET

import aiohttp

from nodeprep.domain import JobService, MonitStatus
from nodeprep.logging import get_logger
from nodeprep.supervisor.exceptions import MonitClientError, ServiceActionError

log = get_logger(source="monit", tags=["supervisor", "monit"])

# monit <monitor> values
MONITOR_OFF = 0
MONITOR_ON = 1
MONITOR_INIT = 2


def read_monit_credentials(path: str) -> tuple[str, str]:
    """Read ``user:password`` from the monit credentials file.

    The password may itself contain colons; only the first one splits.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            content = handle.read().strip()
    except OSError as e:
        raise MonitClientError(f"Reading monit credentials '{path}': {e}") from e

    user, sep, password = content.partition(":")
    if not sep or not user:
        raise MonitClientError(f"Malformed monit credentials in '{path}'")
    return user, password


def _int_text(element: ET.Element, tag: str, default: int = 0) -> int:
    text = element.findtext(tag)
    try:
        return int(text) if text is not None else default
    except ValueError:
        return default


def _service_from_xml(element: ET.Element) -> JobService:
    name = element.get("name") or element.findtext("name") or ""
    monitor = _int_text(element, "monitor")
    status = _int_text(element, "status")
    pending = _int_text(element, "pendingaction") > 0
    monitored = monitor > MONITOR_OFF

    if not monitored:
        status_name = "unknown"
    elif monitor == MONITOR_INIT:
        status_name = "starting"
    elif status == 0:
        status_name = "running"
    else:
        status_name = "failing"

    return JobService(
        name=name,
        monitored=monitored,
        pending=pending,
        errored=monitored and not pending and status != 0,
        status=status_name,
        status_message=element.findtext("status_message") or "",
    )


def parse_status_xml(body: str) -> MonitStatus:
    """Parse the ``/_status2?format=xml`` document."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise MonitClientError(f"Parsing monit status: {e}") from e

    incarnation_text = root.findtext("server/incarnation")
    if incarnation_text is None:
        raise MonitClientError("Parsing monit status: no incarnation")

    services = [
        _service_from_xml(element)
        for element in root.findall("service") + root.findall("services/service")
    ]

    groups: dict[str, tuple[str, ...]] = {}
    for group in root.iter("servicegroup"):
        names = tuple((member.text or "").strip() for member in group.findall("service"))
        groups[group.get("name", "")] = names

    return MonitStatus(
        incarnation=int(incarnation_text),
        services=tuple(services),
        groups=groups,
    )


class MonitClient:
    """Client for one monit daemon."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        timeout_seconds: int = 30,
    ):
        """Initialize monit client.

        Args:
            host: monit HTTP host, normally loopback
            port: monit HTTP port
            username: basic auth user
            password: basic auth password
            timeout_seconds: per-request timeout
        """
        self.base_url = f"http://{host}:{port}"
        self.auth = aiohttp.BasicAuth(username, password)
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def fetch_status(self) -> MonitStatus:
        """Query incarnation, services and service groups.

        Raises:
            MonitClientError: request failed or the document is malformed
        """
        async with aiohttp.ClientSession(timeout=self.timeout, auth=self.auth) as session:
            try:
                async with session.get(
                    f"{self.base_url}/_status2", params={"format": "xml"}
                ) as resp:
                    if resp.status != 200:
                        raise MonitClientError(f"Getting monit status: HTTP {resp.status}")
                    body = await resp.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise MonitClientError(f"Getting monit status: {e}") from e
        return parse_status_xml(body)

    async def service_action(self, service: str, action: str) -> None:
        """POST ``action`` (start, stop or unmonitor) for ``service``."""
        async with aiohttp.ClientSession(timeout=self.timeout, auth=self.auth) as session:
            try:
                async with session.post(
                    f"{self.base_url}/{service}", data={"action": action}
                ) as resp:
                    if resp.status != 200:
                        raise ServiceActionError(action, service, f"HTTP {resp.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise ServiceActionError(action, service, str(e)) from e
        log.debug(f"monit {action} {service}")

    # Synchronous entry points for the job supervisor

    def status(self) -> MonitStatus:
        return asyncio.run(self.fetch_status())

    def services_in_group(self, group: str) -> list[str]:
        return list(self.status().groups.get(group, ()))

    def start_service(self, service: str) -> None:
        asyncio.run(self.service_action(service, "start"))

    def stop_service(self, service: str) -> None:
        asyncio.run(self.service_action(service, "stop"))

    def unmonitor_service(self, service: str) -> None:
        asyncio.run(self.service_action(service, "unmonitor"))
