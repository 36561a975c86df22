"""Tests for supervisor/alerts.py - monit alert SMTP listener."""

import queue
import smtplib
import socket
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from nodeprep.domain import FailureAlert
from nodeprep.supervisor.alerts import (
    AlertParseError,
    AlertSMTPHandler,
    _consume_alerts,
    parse_alert,
    start_alert_listener,
)
from nodeprep.supervisor.exceptions import AlertListenerError

ALERT_MAIL = b"""Message-id: <1304319946.0@localhost>
From: monit@localhost
To: vcap@localhost
Subject: monit alert -- Does not exist nginx

Service: nginx
Event: Does not exist
Action: Start
Date: Sun, 22 May 2011 15:12:26 +0000
Description: process is not running
"""


class TestParseAlert:
    """Tests for parse_alert()."""

    def test_parses_body_fields(self):
        alert = parse_alert(ALERT_MAIL)

        assert alert == FailureAlert(
            id="<1304319946.0@localhost>",
            service="nginx",
            event="Does not exist",
            action="Start",
            date=datetime(2011, 5, 22, 15, 12, 26, tzinfo=timezone.utc),
            description="process is not running",
        )

    def test_body_wins_over_headers(self):
        raw = b"Service: from-header\nEvent: header-event\n\nService: from-body\n"

        alert = parse_alert(raw)

        assert alert.service == "from-body"
        assert alert.event == "header-event"

    def test_unparseable_date(self):
        raw = b"Subject: x\n\nService: nginx\nDate: yesterday-ish\n"

        assert parse_alert(raw).date is None

    def test_missing_service(self):
        with pytest.raises(AlertParseError):
            parse_alert(b"Subject: hello\n\njust a mail\n")


class TestAlertSMTPHandler:
    """Tests for AlertSMTPHandler.handle_DATA()."""

    @pytest.mark.asyncio
    async def test_queues_alert(self):
        alerts = queue.Queue()
        envelope = SimpleNamespace(
            original_content=ALERT_MAIL, content=ALERT_MAIL, mail_from="monit@localhost"
        )

        reply = await AlertSMTPHandler(alerts).handle_DATA(None, None, envelope)

        assert reply.startswith("250")
        assert alerts.get_nowait().service == "nginx"

    @pytest.mark.asyncio
    async def test_rejects_non_alert(self):
        alerts = queue.Queue()
        envelope = SimpleNamespace(
            original_content=b"Subject: hi\n\nhello\n", content=b"", mail_from="x@y"
        )

        reply = await AlertSMTPHandler(alerts).handle_DATA(None, None, envelope)

        assert reply.startswith("554")
        assert alerts.empty()


class TestConsumeAlerts:
    def test_handler_errors_do_not_stop_consumer(self, mocker):
        """Test a failing handler is logged and later alerts still arrive."""
        log = mocker.patch("nodeprep.supervisor.alerts.LoggerFactory.for_alerts").return_value
        received = []

        def handler(alert):
            if alert.service == "bad":
                raise RuntimeError("handler blew up")
            received.append(alert.service)

        alerts = queue.Queue()
        for name in ("bad", "good"):
            alerts.put(FailureAlert("", name, "", "", None, ""))
        alerts.put(None)

        _consume_alerts(alerts, handler)

        assert received == ["good"]
        log.error.assert_called_once()
        assert "handler blew up" in log.error.call_args[0][0]


class TestStartAlertListener:
    """End-to-end tests with a real listener on an ephemeral port."""

    def test_delivers_alert_to_handler(self):
        received = queue.Queue()
        handle = start_alert_listener(received.put, port=0)
        try:
            assert handle.port != 0
            with smtplib.SMTP(handle.host, handle.port, timeout=5) as client:
                client.sendmail("monit@localhost", ["vcap@localhost"], ALERT_MAIL)

            alert = received.get(timeout=5)
            assert alert.service == "nginx"
            assert alert.action == "Start"
        finally:
            handle.stop()

        assert not handle.server_thread.is_alive()
        assert not handle.consumer_thread.is_alive()

    def test_rejected_mail(self):
        received = queue.Queue()
        handle = start_alert_listener(received.put, port=0)
        try:
            with smtplib.SMTP(handle.host, handle.port, timeout=5) as client:
                with pytest.raises(smtplib.SMTPDataError) as exc_info:
                    client.sendmail("x@localhost", ["vcap@localhost"], b"Subject: hi\n\nhello\n")
            assert exc_info.value.smtp_code == 554
        finally:
            handle.stop()

        assert received.empty()

    def test_bind_failure_raises(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("127.0.0.1", 0))
            taken.listen(1)
            port = taken.getsockname()[1]

            with pytest.raises(AlertListenerError) as exc_info:
                start_alert_listener(lambda alert: None, port=port)

        assert exc_info.value.port == port
        assert f"127.0.0.1:{port}" in str(exc_info.value)
