from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from portfolio.config import Settings, get_settings
from portfolio.relay import (
    RelayError,
    export_to_relay,
    generate_email_content,
    relay_app,
    send_email,
    validate_export,
)

INITIATIVES = [
    {"name": "Payments API", "status": "Active", "target_date": "2024-05-01"},
    {"name": "Data Lake", "status": "Risk"},
]
SUMMARY = {"active": 1, "risk": 1, "planned": 0, "completed": 0}


@pytest.fixture()
def relay_settings():
    return Settings(email_from="tracker@acme.com", smtp_host="smtp.acme.com", smtp_port=587)


@pytest.fixture()
def client(relay_settings):
    relay_app.dependency_overrides[get_settings] = lambda: relay_settings
    yield TestClient(relay_app)
    relay_app.dependency_overrides.clear()


class TestValidation:
    @pytest.mark.parametrize("payload,error", [
        ({}, "Invalid data: initiatives array required"),
        ({"initiatives": "nope"}, "Invalid data: initiatives array required"),
        ({"initiatives": []}, "Invalid data: initiatives array cannot be empty"),
        ({"initiatives": [{"name": "A"}]}, "Invalid data: each initiative must have name and status"),
    ])
    def test_bad_payloads(self, payload, error):
        assert validate_export(payload) == error

    def test_good_payload(self):
        assert validate_export({"initiatives": INITIATIVES}) is None


class TestEmailContent:
    def test_lists_status_icons_and_targets(self):
        content = generate_email_content(INITIATIVES, SUMMARY)
        assert "Portfolio Tracker - Weekly Summary" in content
        assert "  ✓ Payments API" in content
        assert "    Target: 2024-05-01" in content
        assert "  ⚠ Data Lake" in content
        assert "⚠ Risk: 1" in content

    def test_unknown_status_uses_bullet(self):
        assert "• Odd" in generate_email_content([{"name": "Odd", "status": "Paused"}], None)


class TestEndpoints:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["service"] == "email-scheduler"
        assert data["timestamp"].endswith("Z")

    def test_export_logs_without_sending(self, client):
        with patch("portfolio.relay.send_email") as mock_send:
            resp = client.post("/api/export-data", json={
                "initiatives": INITIATIVES, "summary": SUMMARY, "email": "boss@acme.com",
            })
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "message": "Data received and logged. Configure SMTP settings to send actual emails.",
            "receivedCount": 2,
        }
        mock_send.assert_not_called()

    def test_export_rejects_bad_input(self, client):
        resp = client.post("/api/export-data", json={"initiatives": []})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid data: initiatives array cannot be empty"}

    def test_export_rejects_array_body(self, client):
        resp = client.post("/api/export-data", json=[{"name": "a", "status": "Active"}])
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid data: initiatives array required"}

    def test_export_rejects_malformed_json(self, client):
        resp = client.post(
            "/api/export-data", content=b"{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid data: initiatives array required"}

    def test_export_sends_when_enabled(self, client, relay_settings):
        relay_settings.enable_real_email = True
        with patch("portfolio.relay.send_email") as mock_send:
            resp = client.post("/api/export-data", json={"initiatives": INITIATIVES, "email": "boss@acme.com"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Email sent to boss@acme.com"
        mock_send.assert_called_once()
        assert mock_send.call_args.args[1] == "boss@acme.com"

    def test_smtp_failure_is_500(self, client, relay_settings):
        import smtplib

        relay_settings.enable_real_email = True
        with patch("portfolio.relay.send_email", side_effect=smtplib.SMTPException("auth failed")):
            resp = client.post("/api/export-data", json={"initiatives": INITIATIVES, "email": "boss@acme.com"})
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "auth failed"}


class TestSendEmail:
    def test_starttls_before_login(self, relay_settings):
        relay_settings.smtp_user = "user"
        relay_settings.smtp_password = "pw"
        with patch("portfolio.relay.smtplib.SMTP") as mock_smtp_cls:
            smtp = MagicMock()
            # Nothing advertised yet: no EHLO has been exchanged on a fresh connection.
            smtp.has_extn.return_value = False
            mock_smtp_cls.return_value = smtp
            smtp.__enter__.return_value = smtp
            send_email(relay_settings, "boss@acme.com", "body")
        calls = [c[0] for c in smtp.method_calls if c[0] in ("starttls", "login", "send_message")]
        assert calls == ["starttls", "login", "send_message"]
        smtp.login.assert_called_once_with("user", "pw")
        msg = smtp.send_message.call_args.args[0]
        assert msg["To"] == "boss@acme.com"
        assert msg["From"] == "tracker@acme.com"
        assert msg["Subject"] == "Portfolio Tracker - Weekly Summary"

    def test_no_login_when_starttls_unsupported(self, relay_settings):
        import smtplib

        relay_settings.smtp_user = "user"
        relay_settings.smtp_password = "pw"
        with patch("portfolio.relay.smtplib.SMTP") as mock_smtp_cls:
            smtp = MagicMock()
            smtp.starttls.side_effect = smtplib.SMTPNotSupportedError("STARTTLS extension not supported by server.")
            mock_smtp_cls.return_value = smtp
            smtp.__enter__.return_value = smtp
            with pytest.raises(smtplib.SMTPNotSupportedError):
                send_email(relay_settings, "boss@acme.com", "body")
        smtp.login.assert_not_called()
        smtp.send_message.assert_not_called()

    def test_ssl_connection_skips_starttls(self, relay_settings):
        relay_settings.smtp_secure = True
        relay_settings.smtp_port = 465
        with patch("portfolio.relay.smtplib.SMTP_SSL") as mock_ssl_cls:
            smtp = MagicMock()
            mock_ssl_cls.return_value = smtp
            smtp.__enter__.return_value = smtp
            send_email(relay_settings, "boss@acme.com", "body")
        mock_ssl_cls.assert_called_once_with("smtp.acme.com", 465, timeout=10)
        smtp.starttls.assert_not_called()
        smtp.send_message.assert_called_once()


class TestExportClient:
    @pytest.mark.asyncio
    async def test_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/export-data"
            return httpx.Response(200, json={"success": True, "receivedCount": 2})

        data = await export_to_relay(
            INITIATIVES, SUMMARY, "boss@acme.com",
            relay_url="http://relay.test/", transport=httpx.MockTransport(handler),
        )
        assert data["receivedCount"] == 2

    @pytest.mark.asyncio
    async def test_relay_error_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"success": False, "error": "Invalid data: initiatives array cannot be empty"})

        with pytest.raises(RelayError, match="cannot be empty"):
            await export_to_relay([], {}, "", relay_url="http://relay.test", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_connect_error_hint(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RelayError, match=r"Is the email relay running at http://relay.test\?"):
            await export_to_relay(INITIATIVES, SUMMARY, "", relay_url="http://relay.test",
                                  transport=httpx.MockTransport(handler))
