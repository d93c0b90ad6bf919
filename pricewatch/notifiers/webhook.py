"""
HTTP webhook notifiers for the sms, push and browser channels.
"""

import re
import time
from abc import abstractmethod
from typing import Any, Callable, Optional

import requests

from .base import AlertNotification, Notifier, NotificationResult, Urgency

SMS_MAX_LENGTH = 160

_PHONE_NUMBER = re.compile(r"^\+?[1-9]\d{7,14}$")


class WebhookNotifier(Notifier):
    """Posts a JSON payload to a delivery gateway."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize webhook notifier.

        Args:
            url: Gateway endpoint receiving the payload
            api_key: Bearer token sent with each request
            timeout: Request timeout in seconds
            sleep: Used to honor Retry-After on HTTP 429
        """
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.sleep = sleep

    def send(self, destination: str, notification: AlertNotification) -> NotificationResult:
        """Send notification to the gateway."""
        problem = self.validate_destination(destination)
        if problem:
            return self.failure(problem, permanent=True)

        try:
            payload = self.create_payload(destination, notification)
            response = self._send_webhook(payload)
        except requests.exceptions.Timeout:
            return self.failure(f"Timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError as e:
            return self.failure(f"Connection error: {str(e)}")
        except requests.exceptions.RequestException as e:
            return self.failure(str(e))

        if response.ok:
            return NotificationResult(success=True, channel=self.channel)

        error = f"HTTP {response.status_code}: {response.text[:200]}"
        # 4xx other than 429 means the gateway rejected this request for good
        permanent = 400 <= response.status_code < 500 and response.status_code != 429
        return self.failure(error, permanent=permanent)

    def _send_webhook(self, payload: dict[str, Any]) -> requests.Response:
        """Send webhook with rate limit handling."""
        response = requests.post(
            self.url,
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )

        # Handle rate limiting
        if response.status_code == 429:
            self.sleep(self._retry_after(response))
            response = requests.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )

        return response

    def _retry_after(self, response: requests.Response) -> float:
        try:
            return min(float(response.headers.get("Retry-After", "1")), self.timeout)
        except ValueError:
            return 1.0

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def validate_destination(self, destination: str) -> Optional[str]:
        """Return an error message if the destination can never be delivered to."""
        if not destination:
            return f"No {self.channel} destination configured"
        return None

    @abstractmethod
    def create_payload(
        self, destination: str, notification: AlertNotification
    ) -> dict[str, Any]:
        pass


class SmsNotifier(WebhookNotifier):
    """Text message through an SMS gateway."""

    channel = "sms"

    def validate_destination(self, destination: str) -> Optional[str]:
        if not destination or not _PHONE_NUMBER.match(destination.replace(" ", "")):
            return f"Invalid phone number: {destination!r}"
        return None

    def create_payload(
        self, destination: str, notification: AlertNotification
    ) -> dict[str, Any]:
        return {
            "to": destination.replace(" ", ""),
            "message": self._create_text(notification),
        }

    def _create_text(self, n: AlertNotification) -> str:
        prefix = "URGENT " if n.urgency == Urgency.URGENT else ""
        text = (
            f"{prefix}Price drop: {n.route} {n.price:.2f} {n.currency} "
            f"(save {n.savings:.2f}) via {n.provider}"
        )
        if len(text) > SMS_MAX_LENGTH:
            text = text[: SMS_MAX_LENGTH - 3] + "..."
        return text


class PushNotifier(WebhookNotifier):
    """Mobile push through a push gateway, addressed by device token."""

    channel = "push"

    def create_payload(
        self, destination: str, notification: AlertNotification
    ) -> dict[str, Any]:
        return {
            "token": destination,
            "title": notification.title,
            "body": notification.message,
            "priority": "high" if notification.urgency == Urgency.URGENT else "normal",
            "data": _data(notification),
        }


class BrowserNotifier(WebhookNotifier):
    """Web push to a browser subscription endpoint."""

    channel = "browser"

    def validate_destination(self, destination: str) -> Optional[str]:
        if not destination or not destination.startswith("https://"):
            return f"Invalid browser subscription endpoint: {destination!r}"
        return None

    def create_payload(
        self, destination: str, notification: AlertNotification
    ) -> dict[str, Any]:
        return {
            "endpoint": destination,
            "title": notification.title,
            "body": notification.message,
            "data": _data(notification),
        }


def _data(n: AlertNotification) -> dict[str, Any]:
    return {
        "alert_id": n.alert_id,
        "quote_id": n.quote_id,
        "route": n.route,
        "current_price": n.price,
        "target_price": n.target_price,
        "currency": n.currency,
        "savings_amount": n.savings,
        "savings_percentage": n.savings_percentage,
        "urgency": n.urgency.value,
        "quality_score": n.quality_score,
    }
