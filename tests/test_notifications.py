"""Tests for outcome e-mails and the outcome recorder."""

from unittest.mock import patch

import pytest

from prebooker.models import IntentStatus, PrebookingFailureData, PrebookingSuccessData
from prebooker.notifications import (
    ResendNotifier,
    display_report,
    render_failure,
    render_success,
)
from prebooker.recorder import OutcomeRecorder, format_class_datetime
from prebooker.state import ExecutionPhase, ExecutionReport

from conftest import NOW, USER


def _success_data() -> PrebookingSuccessData:
    return PrebookingSuccessData(
        user_email=USER,
        class_type="WOD",
        formatted_datetime="Sábado 14 Feb 19:30",
        box_name="crossfitbox",
        booking_id="98765",
        confirmed_at=NOW.isoformat(),
    )


def _failure_data() -> PrebookingFailureData:
    return PrebookingFailureData(
        user_email=USER,
        class_type="WOD",
        formatted_datetime="Sábado 14 Feb 19:30",
        error_message="Clase completa",
        error_code="booking_failed",
        execution_id="a1b2c3d4",
        prepared_at=NOW.isoformat(),
        fire_latency_ms=12.4,
        technical_details={"bookState": -8},
    )


class TestRender:
    def test_success(self):
        subject, html = render_success(_success_data())

        assert "Reserva confirmada" in subject
        assert "WOD" in subject
        assert "98765" in html
        assert "crossfitbox" in html

    def test_failure_includes_technical_details(self):
        subject, html = render_failure(_failure_data())

        assert "Error en reserva" in subject
        assert "Clase completa" in html
        assert "a1b2c3d4" in html
        assert "12ms" in html
        assert "bookState" in html

    def test_html_is_escaped(self):
        data = _failure_data().model_copy(update={"error_message": "<script>x</script>"})
        _, html = render_failure(data)
        assert "<script>" not in html


@pytest.mark.asyncio
class TestResendNotifier:
    @patch("prebooker.notifications.resend.Emails.send")
    async def test_success_goes_to_user_only(self, mock_send):
        mock_send.return_value = {"id": "email_1"}
        notifier = ResendNotifier("re_key", "Prebooker <r@example.com>", "admin@example.com")

        assert await notifier.send_prebooking_success(_success_data())

        params = mock_send.call_args[0][0]
        assert params["to"] == [USER]
        assert params["from"] == "Prebooker <r@example.com>"

    @patch("prebooker.notifications.resend.Emails.send")
    async def test_failure_copies_admin(self, mock_send):
        mock_send.return_value = {"id": "email_2"}
        notifier = ResendNotifier("re_key", "r@example.com", "admin@example.com")

        assert await notifier.send_prebooking_failure(_failure_data())

        assert mock_send.call_args[0][0]["to"] == [USER, "admin@example.com"]

    @patch("prebooker.notifications.resend.Emails.send")
    async def test_admin_not_duplicated(self, mock_send):
        mock_send.return_value = {"id": "email_3"}
        notifier = ResendNotifier("re_key", "r@example.com", USER)

        await notifier.send_prebooking_failure(_failure_data())

        assert mock_send.call_args[0][0]["to"] == [USER]

    @patch("prebooker.notifications.resend.Emails.send")
    async def test_no_api_key_skips(self, mock_send):
        notifier = ResendNotifier("", "r@example.com")

        assert await notifier.send_prebooking_success(_success_data()) is False
        mock_send.assert_not_called()

    @patch("prebooker.notifications.resend.Emails.send")
    async def test_send_error_is_swallowed(self, mock_send):
        mock_send.side_effect = RuntimeError("resend down")
        notifier = ResendNotifier("re_key", "r@example.com")

        assert await notifier.send_prebooking_success(_success_data()) is False


@pytest.mark.asyncio
class TestOutcomeRecorder:
    async def test_record_confirmed_sends_success_mail(self, intents, recorder, notifier):
        intent = intents.add(status=IntentStatus.FIRING)
        report = ExecutionReport(
            intent_id=intent.id, status=IntentStatus.CONFIRMED, booking_id="98765"
        )

        assert await recorder.record(intent, report)
        await recorder.drain()

        stored = intents.rows[intent.id]
        assert stored.status == IntentStatus.CONFIRMED
        assert stored.result["bookingId"] == "98765"
        assert stored.email_sent is True
        assert report.phase == ExecutionPhase.RECORDED
        assert [d.booking_id for d in notifier.successes] == ["98765"]

    async def test_record_failure_keeps_error(self, intents, recorder, notifier):
        intent = intents.add(status=IntentStatus.FIRING)
        report = ExecutionReport(
            intent_id=intent.id,
            status=IntentStatus.FAILED,
            error_code="booking_failed",
            message="Clase completa",
            book_state=-8,
        )

        assert await recorder.record(intent, report)
        await recorder.drain()

        stored = intents.rows[intent.id]
        assert stored.status == IntentStatus.FAILED
        assert stored.error_code == "booking_failed"
        assert stored.error_message == "Clase completa"
        assert report.phase == ExecutionPhase.FAILED
        assert notifier.failures[0].technical_details["bookState"] == -8

    async def test_record_lost_claim(self, intents, recorder, notifier):
        intent = intents.add(status=IntentStatus.CONFIRMED)
        report = ExecutionReport(intent_id=intent.id, status=IntentStatus.FAILED)

        assert not await recorder.record(intent, report)
        await recorder.drain()

        assert intents.rows[intent.id].status == IntentStatus.CONFIRMED
        assert notifier.failures == []

    async def test_release(self, intents, recorder):
        intent = intents.add(status=IntentStatus.FIRING)

        assert await recorder.release(intent, ExecutionReport(intent_id=intent.id))

        assert intents.rows[intent.id].status == IntentStatus.PENDING

    async def test_mail_failure_does_not_change_outcome(self, intents):
        class BrokenNotifier:
            async def send_prebooking_success(self, data):
                raise RuntimeError("boom")

        recorder = OutcomeRecorder(intents, BrokenNotifier())
        intent = intents.add(status=IntentStatus.FIRING)
        report = ExecutionReport(intent_id=intent.id, status=IntentStatus.CONFIRMED)

        assert await recorder.record(intent, report)
        await recorder.drain()

        assert intents.rows[intent.id].status == IntentStatus.CONFIRMED
        assert intents.rows[intent.id].email_sent is False


def test_format_class_datetime_falls_back_to_madrid_time(intents):
    intent = intents.add(class_label="")
    # 18:30 UTC in February is 19:30 in Madrid
    assert format_class_datetime(intent) == "10/02/2026 19:30"


def test_display_report():
    report = ExecutionReport(
        intent_id="abc",
        phase=ExecutionPhase.RECORDED,
        status=IntentStatus.CONFIRMED,
        booking_id="98765",
        fire_latency_ms=3.2,
    )
    display_report(report)
