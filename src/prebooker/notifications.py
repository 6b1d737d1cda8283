"""Prebooking notifications: Resend e-mail + Rich console output.

E-mail routing:
- success → the user only
- failure → the user and ADMIN_EMAIL, with technical details for debugging

Sending never raises; a failed e-mail must not change an intent's outcome.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from prebooker.models import PrebookingFailureData, PrebookingSuccessData
from prebooker.state import ExecutionReport

logger = logging.getLogger(__name__)

console = Console()
TEMPLATES_DIR = Path(__file__).parent / "templates"

_templates = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
)


class Notifier(Protocol):
    async def send_prebooking_success(self, data: PrebookingSuccessData) -> bool: ...

    async def send_prebooking_failure(self, data: PrebookingFailureData) -> bool: ...


def render_success(data: PrebookingSuccessData) -> tuple[str, str]:
    """Subject and HTML body for a confirmed booking."""
    subject = f"✅ Reserva confirmada: {data.class_type} - {data.formatted_datetime}"
    html = _templates.get_template("prebooking_success.html").render(data=data)
    return subject, html


def render_failure(data: PrebookingFailureData) -> tuple[str, str]:
    """Subject and HTML body for a failed booking."""
    subject = f"❌ Error en reserva: {data.class_type} - {data.formatted_datetime}"
    html = _templates.get_template("prebooking_failure.html").render(data=data)
    return subject, html


class ResendNotifier:
    """Sends prebooking e-mails through Resend.

    The Resend SDK is synchronous, so each send runs in a worker thread.
    """

    def __init__(self, api_key: str, sender: str, admin_email: str = "") -> None:
        self._api_key = api_key
        self._sender = sender
        self._admin_email = admin_email
        resend.api_key = api_key

    async def _send(self, to: list[str], subject: str, html: str) -> bool:
        if not self._api_key:
            logger.warning("RESEND_API_KEY not set, skipping e-mail to %s", ", ".join(to))
            return False
        params = {"from": self._sender, "to": to, "subject": subject, "html": html}
        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            logger.error("E-mail to %s failed: %s", ", ".join(to), e)
            return False
        logger.info("E-mail sent to %s (id=%s)", ", ".join(to), response.get("id"))
        return True

    async def send_prebooking_success(self, data: PrebookingSuccessData) -> bool:
        subject, html = render_success(data)
        return await self._send([data.user_email], subject, html)

    async def send_prebooking_failure(self, data: PrebookingFailureData) -> bool:
        recipients = [data.user_email]
        if self._admin_email and self._admin_email != data.user_email:
            recipients.append(self._admin_email)
        subject, html = render_failure(data)
        return await self._send(recipients, subject, html)


# ---------------------------------------------------------------------------
# Console output (CLI)
# ---------------------------------------------------------------------------


def display_report(report: ExecutionReport) -> None:
    """Display one execution report with Rich formatting."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()

    table.add_row("Intent", report.intent_id)
    table.add_row("Execution", report.execution_id)
    table.add_row("Phase", report.phase.value)
    if report.booking_id:
        table.add_row("Booking", report.booking_id)
    if report.error_code:
        table.add_row("Error", f"{report.error_code}: {report.message}")
    if report.fire_latency_ms is not None:
        table.add_row("Fire latency", f"{report.fire_latency_ms:.0f}ms")
    if report.response_time_ms is not None:
        table.add_row("Response", f"{report.response_time_ms:.0f}ms")

    if report.success:
        console.print(Panel(table, title="BOOKING CONFIRMED", border_style="green"))
    else:
        console.print(Panel(table, title="BOOKING FAILED", border_style="red"))
