"""
Email SMTP notifier.
"""

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from kanban.database.models import RuleNotificationEvent
from .base import Notifier, NotificationResult


class EmailNotifier(Notifier):
    """Sends rule-triggered events via email SMTP."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        to_addresses: list[str],
        timeout: float = 10,
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
            to_addresses: List of recipient email addresses
            timeout: Socket timeout in seconds
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.to_addresses = to_addresses
        self.timeout = timeout

    def send(self, event: RuleNotificationEvent) -> NotificationResult:
        """Send event via email."""
        try:
            message = self._create_message(event)

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            return NotificationResult(success=True, channel="email")

        except smtplib.SMTPAuthenticationError as e:
            return NotificationResult(
                success=False,
                channel="email",
                error=f"Authentication failed: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel="email",
                error=f"SMTP error: {str(e)}",
            )

    def _create_message(self, event: RuleNotificationEvent) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = f"[{event.new_status.display_name}] {event.stock_code}: {event.rule_name}"
        message["From"] = self.from_address
        message["To"] = ", ".join(self.to_addresses)

        message.attach(MIMEText(self._create_text_body(event), "plain"))
        message.attach(MIMEText(self._create_body(event), "html"))

        return message

    def _create_text_body(self, event: RuleNotificationEvent) -> str:
        """Create plain text email body."""
        previous = event.previous_status.display_name if event.previous_status else "None"
        return f"""
Rule Triggered

Stock: {event.stock_name} ({event.stock_code})
Rule: {event.rule_name}
Status: {previous} -> {event.new_status.display_name}

{event.message}

Time: {event.triggered_at.strftime("%Y-%m-%d %H:%M:%S")}
"""

    def _create_body(self, event: RuleNotificationEvent) -> str:
        """Create HTML email body."""
        previous = event.previous_status.display_name if event.previous_status else "None"
        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .rule-box {{
            border-left: 4px solid #3498DB;
            padding: 15px;
            background-color: #f9f9f9;
        }}
        .stock {{ font-size: 24px; font-weight: bold; }}
        .status {{ font-size: 18px; color: #333; }}
        .message {{ margin: 15px 0; color: #555; }}
        .meta {{ color: #888; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="rule-box">
        <div class="stock">{event.stock_name} ({event.stock_code})</div>
        <div class="status">{previous} &rarr; {event.new_status.display_name}</div>
        <div class="message">{event.message}</div>
        <div class="meta">
            Rule: {event.rule_name}<br>
            Time: {event.triggered_at.strftime("%Y-%m-%d %H:%M:%S")}
        </div>
    </div>
</body>
</html>
"""
