"""Email relay: a small standalone service that receives portfolio exports.

The tracker posts the visible initiatives and a status summary here. The
relay validates, logs and renders them as a plain-text email, and only sends
over SMTP when ``ENABLE_REAL_EMAIL=true``.
"""
from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from portfolio.config import Settings, get_settings
from portfolio.schemas import STATUS_ICONS
from portfolio.utils import to_iso, utc_now

log = logging.getLogger(__name__)

SERVICE_NAME = "email-scheduler"
_RULE = "═" * 39


class RelayError(Exception):
    """The relay rejected an export or could not be reached."""


def _target_date(initiative: dict[str, Any]) -> str:
    return initiative.get("target_date") or initiative.get("targetDate") or ""


def validate_export(payload: Any) -> str | None:
    """Return an error message for a bad export payload, or None if it is usable."""
    initiatives = payload.get("initiatives") if isinstance(payload, dict) else None
    if not isinstance(initiatives, list):
        return "Invalid data: initiatives array required"
    if not initiatives:
        return "Invalid data: initiatives array cannot be empty"
    for item in initiatives:
        if not isinstance(item, dict) or not item.get("name") or not item.get("status"):
            return "Invalid data: each initiative must have name and status"
    return None


def generate_email_content(initiatives: list[dict[str, Any]], summary: dict[str, Any] | None) -> str:
    lines = [
        "",
        "╔══════════════════════════════════════════╗",
        "║   Portfolio Tracker - Weekly Summary     ║",
        "╚══════════════════════════════════════════╝",
        "",
    ]
    if summary:
        lines += [
            "📊 Summary:",
            f"  ✓ Active: {summary.get('active') or 0}",
            f"  ⚠ Risk: {summary.get('risk') or 0}",
            f"  📋 Planned: {summary.get('planned') or 0}",
            f"  ✅ Completed: {summary.get('completed') or 0}",
            "",
        ]
    lines.append("📋 Initiatives:")
    for item in initiatives:
        lines.append(f"  {STATUS_ICONS.get(item.get('status'), '•')} {item.get('name')}")
        if _target_date(item):
            lines.append(f"    Target: {_target_date(item)}")
    lines.append("")
    return "\n".join(lines) + "\n"


def log_portfolio_data(initiatives: list[dict[str, Any]], summary: dict[str, Any] | None, email: str | None) -> None:
    log.info("Received portfolio data for email: %d initiatives, recipient %s",
             len(initiatives), email or "Not specified")
    if summary:
        log.info("Summary: active=%s risk=%s planned=%s completed=%s",
                 summary.get("active") or 0, summary.get("risk") or 0,
                 summary.get("planned") or 0, summary.get("completed") or 0)
    for idx, item in enumerate(initiatives, 1):
        target = _target_date(item)
        log.info("  %d. [%s] %s%s", idx, item.get("status"), item.get("name"),
                 f" (target {target})" if target else "")


def send_email(settings: Settings, recipient: str, content: str) -> None:
    """Send *content* to *recipient* over SMTP. Raises on SMTP failure."""
    msg = EmailMessage()
    msg["Subject"] = settings.email_subject
    msg["From"] = settings.email_from
    msg["To"] = recipient
    msg.set_content(content)

    if settings.smtp_secure:
        smtp: smtplib.SMTP = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=10)
    else:
        smtp = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
    with smtp:
        # Plain connections must upgrade before any credentials go out; a server
        # without STARTTLS fails here with SMTPNotSupportedError.
        if not settings.smtp_secure:
            smtp.starttls()
        if settings.smtp_user:
            smtp.login(settings.smtp_user, settings.smtp_password)
        smtp.send_message(msg)
    log.info("Email sent to %s", recipient)


relay_app = FastAPI(
    title="Portfolio Tracker Email Relay",
    version="1.0.0",
    description="Receives portfolio exports and turns them into summary emails.",
)


def _fail(status_code: int, error: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


@relay_app.post("/api/export-data", summary="Receive a portfolio export and email it")
async def export_data(request: Request, settings: Settings = Depends(get_settings)):
    try:
        body = await request.json()
    except ValueError:
        body = None
    error = validate_export(body)
    if error:
        log.warning("Rejected export: %s", error)
        return _fail(400, error)

    initiatives = body["initiatives"]
    summary = body.get("summary") if isinstance(body.get("summary"), dict) else None
    recipient = body.get("email") or ""
    log_portfolio_data(initiatives, summary, recipient)
    content = generate_email_content(initiatives, summary)

    if not settings.enable_real_email:
        log.debug("Email content preview:\n%s", content)
        return {
            "success": True,
            "message": "Data received and logged. Configure SMTP settings to send actual emails.",
            "receivedCount": len(initiatives),
        }
    if not recipient:
        return _fail(400, "Invalid data: recipient email required")
    try:
        await asyncio.to_thread(send_email, settings, recipient, content)
    except (smtplib.SMTPException, OSError) as exc:
        log.error("Failed to send email to %s: %s", recipient, exc)
        return _fail(500, str(exc))
    return {"success": True, "message": f"Email sent to {recipient}", "receivedCount": len(initiatives)}


@relay_app.get("/health", summary="Liveness probe")
async def health():
    return {"status": "healthy", "service": SERVICE_NAME, "timestamp": to_iso(utc_now())}


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------


async def export_to_relay(
    initiatives: list[dict[str, Any]],
    summary: dict[str, Any],
    email: str,
    *,
    relay_url: str,
    timeout: float = 15.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """POST an export to the relay and return its JSON reply. Raises RelayError."""
    url = relay_url.rstrip("/") + "/api/export-data"
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(url, json={"initiatives": initiatives, "summary": summary, "email": email})
    except httpx.ConnectError as exc:
        raise RelayError(f"Failed to export: {exc} (Is the email relay running at {relay_url}?)") from exc
    except httpx.HTTPError as exc:
        raise RelayError(f"Failed to export: {exc}") from exc
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code >= 400 or not data.get("success"):
        raise RelayError(data.get("error") or f"Relay returned HTTP {resp.status_code}")
    return data


def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = get_settings()
    if not settings.enable_real_email:
        log.warning("ENABLE_REAL_EMAIL is off; exports are logged, not sent")
    uvicorn.run(relay_app, host="127.0.0.1", port=settings.relay_port)


if __name__ == "__main__":
    main()
