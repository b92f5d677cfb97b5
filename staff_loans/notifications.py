"""
Notification Module

Best-effort notifications for loan lifecycle events (approval requests,
decisions, disbursal, repayment, closure). Delivery never blocks or fails the
loan operation that triggered it.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import uuid

import requests

from .logging_config import get_logger


logger = get_logger("notifications")


class NotificationType(Enum):
    """Types of loan notifications"""
    APPROVAL_REQUIRED = "approval_required"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_SANCTIONED = "loan_sanctioned"
    LOAN_DISBURSED = "loan_disbursed"
    EMI_DEDUCTED = "emi_deducted"
    INSTALLMENT_WAIVED = "installment_waived"
    LOAN_CLOSED = "loan_closed"


# Subject and body templates with {placeholders}
TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.APPROVAL_REQUIRED: {
        "subject": "Action required: loan {loan_id} awaits your approval",
        "body": "Loan {loan_id} ({product_name}) for employee {employee_id} "
                "of {principal} over {tenure_months} months is waiting at stage {stage}.",
    },
    NotificationType.LOAN_APPROVED: {
        "subject": "Your loan {loan_id} was approved at level {level}",
        "body": "Your {product_name} application of {principal} moved to {status}. Remarks: {remarks}",
    },
    NotificationType.LOAN_REJECTED: {
        "subject": "Your loan {loan_id} was rejected",
        "body": "Your {product_name} application of {principal} was rejected at level {level}. "
                "Remarks: {remarks}",
    },
    NotificationType.LOAN_SANCTIONED: {
        "subject": "Your loan {loan_id} was sanctioned",
        "body": "Finance sanctioned {principal} at {interest_rate}% for {tenure_months} months. "
                "Monthly EMI: {emi_amount}.",
    },
    NotificationType.LOAN_DISBURSED: {
        "subject": "Your loan {loan_id} has been disbursed",
        "body": "{principal} was disbursed on {disbursal_date}. "
                "{tenure_months} installments of {emi_amount} will be deducted from payroll.",
    },
    NotificationType.EMI_DEDUCTED: {
        "subject": "EMI {sequence} deducted for loan {loan_id}",
        "body": "{amount} was deducted in payroll cycle {cycle}. Outstanding balance: {outstanding}.",
    },
    NotificationType.INSTALLMENT_WAIVED: {
        "subject": "Installment {sequence} of loan {loan_id} was waived",
        "body": "Installment {sequence} was waived. Outstanding balance: {outstanding}. Remarks: {remarks}",
    },
    NotificationType.LOAN_CLOSED: {
        "subject": "Your loan {loan_id} is closed",
        "body": "All installments of loan {loan_id} are settled as of {closure_date}.",
    },
}


def render(notification_type: NotificationType, context: Dict[str, Any]) -> Dict[str, str]:
    """Render the subject and body for a notification type"""
    template = TEMPLATES[notification_type]
    safe_context = _DefaultDict(context)
    return {
        "subject": template["subject"].format_map(safe_context),
        "body": template["body"].format_map(safe_context),
    }


class _DefaultDict(dict):
    """Leaves unknown placeholders visible instead of raising KeyError"""

    def __missing__(self, key):
        return "{" + key + "}"


class NotificationSink(ABC):
    """Abstract base class for notification channels"""

    @abstractmethod
    def notify(self, recipient_email: str, subject: str, body: str) -> bool:
        """Send a notification. Returns True if accepted by the channel."""
        pass


class LogNotifier(NotificationSink):
    """Logging channel for development and deployments without a gateway"""

    def notify(self, recipient_email: str, subject: str, body: str) -> bool:
        logger.info(f"Notification to {recipient_email}: {subject} | {body[:100]}")
        return True


class WebhookNotifier(NotificationSink):
    """Webhook channel that POSTs notifications to an external gateway"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def notify(self, recipient_email: str, subject: str, body: str) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": str(uuid.uuid4()),
            "recipient_email": recipient_email,
            "subject": subject,
            "body": body,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()
        return True


class NotificationDispatcher:
    """
    Fire-and-forget front for a notification sink

    With ``max_workers`` set, delivery happens on a background thread pool;
    otherwise inline. Either way every failure is logged and swallowed.
    """

    def __init__(self, sink: NotificationSink, max_workers: Optional[int] = None,
                 enabled: bool = True):
        self.sink = sink
        self.enabled = enabled
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="loan-notify") if max_workers else None

    def dispatch(self, recipient_email: Optional[str], notification_type: NotificationType,
                 context: Dict[str, Any]) -> None:
        """Render a template and deliver it without raising"""
        if not self.enabled:
            return
        if not recipient_email:
            logger.debug(f"No recipient for {notification_type.value} notification, skipped")
            return

        try:
            message = render(notification_type, context)
        except Exception:
            logger.warning(f"Could not render {notification_type.value} notification", exc_info=True)
            return

        if self._executor:
            try:
                self._executor.submit(self._deliver, recipient_email, notification_type,
                                      message["subject"], message["body"])
            except RuntimeError:
                # Executor already shut down
                logger.warning(f"Dropped {notification_type.value} notification for {recipient_email}")
        else:
            self._deliver(recipient_email, notification_type, message["subject"], message["body"])

    def _deliver(self, recipient_email: str, notification_type: NotificationType,
                 subject: str, body: str) -> None:
        try:
            if not self.sink.notify(recipient_email, subject, body):
                logger.warning(f"{notification_type.value} notification to {recipient_email} not accepted")
        except Exception:
            logger.warning(
                f"{notification_type.value} notification to {recipient_email} failed",
                exc_info=True,
            )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background pool, optionally waiting for queued deliveries"""
        if self._executor:
            self._executor.shutdown(wait=wait)
