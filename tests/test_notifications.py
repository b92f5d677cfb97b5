"""
Test suite for notification module

Tests template rendering, the webhook channel and the fire-and-forget
dispatcher that must never fail a loan operation.
"""

import pytest
from unittest.mock import Mock, patch

import requests

from staff_loans.notifications import (
    LogNotifier, NotificationDispatcher, NotificationSink, NotificationType,
    WebhookNotifier, render, TEMPLATES
)


class FailingSink(NotificationSink):
    def notify(self, recipient_email, subject, body):
        raise ConnectionError("gateway unreachable")


class TestRender:
    """Test template rendering"""

    def test_every_type_has_a_template(self):
        assert set(TEMPLATES) == set(NotificationType)

    def test_render_disbursed(self):
        message = render(NotificationType.LOAN_DISBURSED, {
            "loan_id": "L1", "principal": "120,000.00", "disbursal_date": "2025-01-10",
            "tenure_months": 12, "emi_amount": "10,661.85",
        })

        assert message["subject"] == "Your loan L1 has been disbursed"
        assert "12 installments of 10,661.85" in message["body"]

    def test_missing_placeholder_is_left_visible(self):
        message = render(NotificationType.LOAN_CLOSED, {"loan_id": "L1"})
        assert "{closure_date}" in message["body"]


class TestWebhookNotifier:
    """Test webhook delivery via requests"""

    @patch("staff_loans.notifications.requests.post")
    def test_posts_payload(self, mock_post):
        mock_post.return_value = Mock(status_code=200)
        notifier = WebhookNotifier("https://hooks.acme.test/loans", timeout=2.0)

        assert notifier.notify("e100@acme.test", "Subject", "Body")

        args, kwargs = mock_post.call_args
        assert args[0] == "https://hooks.acme.test/loans"
        assert kwargs["timeout"] == 2.0
        assert kwargs["json"]["recipient_email"] == "e100@acme.test"
        assert kwargs["json"]["subject"] == "Subject"
        assert "notification_id" in kwargs["json"]

    @patch("staff_loans.notifications.requests.post")
    def test_http_error_propagates(self, mock_post):
        response = Mock()
        response.raise_for_status.side_effect = requests.HTTPError("502")
        mock_post.return_value = response

        with pytest.raises(requests.HTTPError):
            WebhookNotifier("https://hooks.acme.test/loans").notify("a@b.c", "s", "b")


class TestNotificationDispatcher:
    """Test best-effort dispatch"""

    def test_inline_delivery(self):
        sink = Mock(spec=NotificationSink)
        sink.notify.return_value = True
        dispatcher = NotificationDispatcher(sink)

        dispatcher.dispatch("e100@acme.test", NotificationType.LOAN_REJECTED,
                            {"loan_id": "L1", "product_name": "Personal", "principal": "1000",
                             "level": 1, "remarks": "No"})

        recipient, subject, body = sink.notify.call_args[0]
        assert recipient == "e100@acme.test"
        assert subject == "Your loan L1 was rejected"
        assert "Remarks: No" in body

    def test_sink_failure_is_swallowed(self, caplog):
        dispatcher = NotificationDispatcher(FailingSink())

        dispatcher.dispatch("e100@acme.test", NotificationType.LOAN_CLOSED,
                            {"loan_id": "L1", "closure_date": "2025-12-10"})

        assert "failed" in caplog.text

    def test_missing_recipient_skips(self):
        sink = Mock(spec=NotificationSink)
        NotificationDispatcher(sink).dispatch(None, NotificationType.LOAN_CLOSED, {})
        sink.notify.assert_not_called()

    def test_disabled_dispatcher_skips(self):
        sink = Mock(spec=NotificationSink)
        NotificationDispatcher(sink, enabled=False).dispatch(
            "e100@acme.test", NotificationType.LOAN_CLOSED, {}
        )
        sink.notify.assert_not_called()

    def test_background_delivery(self):
        sink = Mock(spec=NotificationSink)
        sink.notify.return_value = True
        dispatcher = NotificationDispatcher(sink, max_workers=2)

        for i in range(5):
            dispatcher.dispatch(f"e{i}@acme.test", NotificationType.LOAN_CLOSED,
                                {"loan_id": f"L{i}", "closure_date": "2025-12-10"})
        dispatcher.shutdown(wait=True)

        assert sink.notify.call_count == 5

    def test_dispatch_after_shutdown_is_dropped(self, caplog):
        sink = Mock(spec=NotificationSink)
        dispatcher = NotificationDispatcher(sink, max_workers=1)
        dispatcher.shutdown()

        dispatcher.dispatch("e100@acme.test", NotificationType.LOAN_CLOSED, {"loan_id": "L1"})

        sink.notify.assert_not_called()
        assert "Dropped" in caplog.text

    def test_log_notifier_accepts(self):
        assert LogNotifier().notify("e100@acme.test", "Subject", "Body")
