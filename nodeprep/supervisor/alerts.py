"""SMTP listener for monit failure alerts.

monit is configured to mail its alerts to ``127.0.0.1:<port>``. Each mail is
parsed into a :class:`~nodeprep.domain.FailureAlert` on the listener's event
loop thread and put on a queue; a separate consumer thread calls the
registered handler, so a slow or failing handler never blocks SMTP sessions.

Alert format (header block and/or body lines)::

    Message-id: <1304319946.0@localhost>
    Service: nginx
    Event: Does not exist
    Action: Start
    Date: Sun, 22 May 2011 15:12:26 +0000
    Description: process is not running
"""

from __future__ import annotations

import asyncio
import queue
import threading
from dataclasses import dataclass
from email import message_from_bytes
from email.message import Message
from email.utils import parsedate_to_datetime
from typing import Callable

from aiosmtpd.smtp import SMTP

from nodeprep.domain import FailureAlert
from nodeprep.logging import LoggerFactory
from nodeprep.supervisor.exceptions import AlertListenerError

DEFAULT_HOST = "127.0.0.1"

_ALERT_FIELDS = ("message-id", "service", "event", "action", "date", "description")


class AlertParseError(ValueError):
    """A mail did not look like a monit alert."""


def _body_text(message: Message) -> str:
    if message.is_multipart():
        parts = [part for part in message.walk() if part.get_content_type() == "text/plain"]
        payload = parts[0].get_payload(decode=True) if parts else b""
    else:
        payload = message.get_payload(decode=True) or b""
    return payload.decode("utf-8", errors="replace")


def parse_alert(raw: bytes) -> FailureAlert:
    """Build a FailureAlert from a raw monit alert mail.

    ``Key: value`` lines in the body win over mail headers of the same name.
    """
    message = message_from_bytes(raw)
    fields: dict[str, str] = {}
    for key in _ALERT_FIELDS:
        value = message.get(key)
        if value is not None:
            fields[key] = str(value).strip()

    for line in _body_text(message).splitlines():
        key, sep, value = line.partition(":")
        key = key.strip().lower()
        if sep and key in _ALERT_FIELDS:
            fields[key] = value.strip()

    if not fields.get("service"):
        raise AlertParseError("alert has no Service field")

    date = None
    if fields.get("date"):
        try:
            date = parsedate_to_datetime(fields["date"])
        except (TypeError, ValueError):
            date = None

    return FailureAlert(
        id=fields.get("message-id", ""),
        service=fields["service"],
        event=fields.get("event", ""),
        action=fields.get("action", ""),
        date=date,
        description=fields.get("description", ""),
    )


class AlertSMTPHandler:
    """aiosmtpd handler that queues parsed alerts."""

    def __init__(self, alerts: queue.Queue):
        self.alerts = alerts
        self._log = LoggerFactory.for_alerts()

    async def handle_DATA(self, server, session, envelope) -> str:
        try:
            alert = parse_alert(envelope.original_content or envelope.content)
        except AlertParseError as e:
            self._log.warning(f"Rejecting mail from {envelope.mail_from}: {e}")
            return "554 Transaction failed: not a monit alert"
        self._log.info(f"Received alert for {alert.service}: {alert.event}")
        self.alerts.put(alert)
        return "250 Message accepted for delivery"


@dataclass
class AlertListenerHandle:
    """A running alert listener."""

    host: str
    port: int
    loop: asyncio.AbstractEventLoop
    server: asyncio.AbstractServer
    alerts: queue.Queue
    server_thread: threading.Thread
    consumer_thread: threading.Thread

    def stop(self, timeout: float = 5.0) -> None:
        def _close() -> None:
            self.server.close()
            self.loop.stop()

        self.loop.call_soon_threadsafe(_close)
        self.server_thread.join(timeout)
        self.alerts.put(None)
        self.consumer_thread.join(timeout)


def _consume_alerts(alerts: queue.Queue, handler: Callable[[FailureAlert], None]) -> None:
    log = LoggerFactory.for_alerts()
    while True:
        alert = alerts.get()
        if alert is None:
            return
        try:
            handler(alert)
        except Exception as e:
            log.error(f"Alert handler failed for {alert.service}: {e}")


def start_alert_listener(
    handler: Callable[[FailureAlert], None],
    port: int,
    host: str = DEFAULT_HOST,
) -> AlertListenerHandle:
    """Start listening for alerts in background threads.

    Blocks only until the socket is bound. A bind failure raises
    AlertListenerError; later serving errors are logged, never raised.
    Port 0 binds an ephemeral port, reported on the returned handle.
    """
    startup_queue: queue.Queue = queue.Queue(maxsize=1)
    alerts: queue.Queue = queue.Queue()
    log = LoggerFactory.for_alerts()

    def run_server() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        smtp_handler = AlertSMTPHandler(alerts)

        try:
            server = loop.run_until_complete(
                loop.create_server(lambda: SMTP(smtp_handler), host, port)
            )
        except Exception as exc:
            startup_queue.put(("error", exc))
            loop.close()
            return
        startup_queue.put(("ok", (loop, server)))

        try:
            loop.run_forever()
        except Exception as e:
            log.error(f"Alert listener stopped: {e}")
        finally:
            loop.run_until_complete(server.wait_closed())
            loop.close()

    server_thread = threading.Thread(target=run_server, name="alert-listener", daemon=True)
    server_thread.start()

    status, payload = startup_queue.get()
    if status == "error":
        raise AlertListenerError(host, port, str(payload)) from payload

    loop, server = payload
    bound_port = server.sockets[0].getsockname()[1]

    consumer_thread = threading.Thread(
        target=_consume_alerts, args=(alerts, handler), name="alert-consumer", daemon=True
    )
    consumer_thread.start()
    log.info(f"Listening for monit alerts on {host}:{bound_port}")

    return AlertListenerHandle(
        host=host,
        port=bound_port,
        loop=loop,
        server=server,
        alerts=alerts,
        server_thread=server_thread,
        consumer_thread=consumer_thread,
    )
