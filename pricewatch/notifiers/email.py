"""
Email SMTP notifier.
"""

import html
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import parseaddr

from .base import AlertNotification, Notifier, NotificationResult, Urgency


class EmailNotifier(Notifier):
    """Sends notifications via email SMTP."""

    channel = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address

    def send(self, destination: str, notification: AlertNotification) -> NotificationResult:
        """Send notification via email."""
        _, address = parseaddr(destination or "")
        if "@" not in address:
            return self.failure(f"Invalid email address: {destination!r}", permanent=True)

        try:
            message = self._create_message(address, notification)

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls()
                if self.smtp_user:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            return NotificationResult(success=True, channel=self.channel)

        except smtplib.SMTPAuthenticationError as e:
            return self.failure(f"Authentication failed: {str(e)}", permanent=True)
        except smtplib.SMTPRecipientsRefused as e:
            return self.failure(f"Recipient refused: {str(e)}", permanent=True)
        except (smtplib.SMTPException, OSError) as e:
            return self.failure(f"SMTP error: {str(e)}")

    def _create_message(self, to_address: str, notification: AlertNotification) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = self._create_subject(notification)
        message["From"] = self.from_address
        message["To"] = to_address

        # Plain text version
        text_body = self._create_text_body(notification)
        message.attach(MIMEText(text_body, "plain"))

        # HTML version
        html_body = self._create_body(notification)
        message.attach(MIMEText(html_body, "html"))

        return message

    def _create_subject(self, notification: AlertNotification) -> str:
        """Create email subject."""
        prefix = {
            Urgency.URGENT: "[URGENT]",
            Urgency.SIGNIFICANT: "[Deal]",
            Urgency.MINOR: "[Price drop]",
        }[notification.urgency]
        return (
            f"{prefix} {notification.route} for {notification.price:.2f} "
            f"{notification.currency} (save {notification.savings:.2f})"
        )

    def _details(self, n: AlertNotification) -> list[tuple[str, str]]:
        rows = [
            ("Route", n.route),
            ("Price", f"{n.price:.2f} {n.currency}"),
            ("Target", f"{n.target_price:.2f} {n.currency}"),
            ("Savings", f"{n.savings:.2f} ({n.savings_percentage:.1f}%)"),
            ("Provider", n.provider),
        ]
        if n.departure_date:
            rows.append(("Departure", n.departure_date.isoformat()))
        if n.airline:
            rows.append(("Airline", n.airline))
        if n.stops is not None:
            rows.append(("Stops", "nonstop" if n.stops == 0 else str(n.stops)))
        return rows

    def _create_text_body(self, notification: AlertNotification) -> str:
        """Create plain text email body."""
        details = "\n".join(f"{k}: {v}" for k, v in self._details(notification))
        differences = "".join(f"\n- {d}" for d in notification.differences)
        if differences:
            differences = "\nDifferences from your filter:" + differences + "\n"
        return f"""
Flight price alert: {notification.filter_name}

{details}
{differences}
{notification.message}

Time: {notification.triggered_at.strftime("%Y-%m-%d %H:%M:%S")}
"""

    def _create_body(self, notification: AlertNotification) -> str:
        """Create HTML email body."""
        color = {
            Urgency.URGENT: "#FF0000",
            Urgency.SIGNIFICANT: "#FFA500",
            Urgency.MINOR: "#3498DB",
        }[notification.urgency]
        details = "<br>\n            ".join(
            f"{html.escape(str(k))}: {html.escape(str(v))}"
            for k, v in self._details(notification)
        )
        differences = ""
        if notification.differences:
            items = "".join(f"<li>{html.escape(d)}</li>" for d in notification.differences)
            differences = f'<div class="differences">Differs from your filter:<ul>{items}</ul></div>'

        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .alert-box {{
            border-left: 4px solid {color};
            padding: 15px;
            background-color: #f9f9f9;
            margin-bottom: 20px;
        }}
        .route {{ font-size: 24px; font-weight: bold; color: {color}; }}
        .price {{ font-size: 18px; color: #333; }}
        .message {{ margin: 15px 0; color: #555; }}
        .meta {{ color: #888; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="alert-box">
        <div class="route">{html.escape(notification.route)}</div>
        <div class="price">{notification.price:.2f} {notification.currency}</div>
        <div class="message">{html.escape(notification.message)}</div>
        {differences}
        <div class="meta">
            {details}<br>
            Time: {notification.triggered_at.strftime("%Y-%m-%d %H:%M:%S")}
        </div>
    </div>
</body>
</html>
"""
