"""Email notification adapter."""

import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

import structlog

logger = structlog.get_logger()


@dataclass
class EmailConfig:
    """Email configuration."""

    smtp_host: str
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    from_email: str = "gatekeeper@example.com"
    from_name: str = "Gatekeeper"
    use_tls: bool = True


class EmailNotifier:
    """Delivers notifications via email (SMTP)."""

    def __init__(self, config: EmailConfig):
        """Initialize the email notifier.

        Args:
            config: Email configuration settings.
        """
        self.config = config

    def send(
        self,
        to_emails: list[str],
        subject: str,
        body_html: str,
        body_text: str | None = None,
    ) -> bool:
        """Send email notification.

        Returns True if the email was sent successfully.
        Note: This is synchronous - use in a thread pool for async contexts.
        """
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.config.from_name} <{self.config.from_email}>"
            msg["To"] = ", ".join(to_emails)

            if body_text:
                msg.attach(MIMEText(body_text, "plain"))
            msg.attach(MIMEText(body_html, "html"))

            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port) as server:
                if self.config.use_tls:
                    server.starttls()

                if self.config.smtp_user and self.config.smtp_password:
                    server.login(self.config.smtp_user, self.config.smtp_password)

                server.sendmail(
                    self.config.from_email,
                    to_emails,
                    msg.as_string(),
                )

            logger.info("email_sent", to=to_emails, subject=subject)
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_error", to=to_emails, subject=subject, error=str(e))
            return False

    def send_reconciliation_report(self, to_email: str, issues_found: int, summary: str) -> bool:
        """Send the admin drift report."""
        subject = f"Reconciliation Report: {issues_found} issue(s) found"

        body_html = f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2 style="color: #ff9800;">Reconciliation Report</h2>
            <pre style="background: #f5f5f5; padding: 15px; border-radius: 5px;">{escape(summary)}</pre>
        </body>
        </html>
        """

        return self.send([to_email], subject, body_html, summary)

    def send_payment_failure(self, to_email: str, portal_url: str, is_team_owner: bool) -> bool:
        """Tell a subscriber their renewal payment failed."""
        subject = "Action required: your payment failed"
        scope = "your team's subscription" if is_team_owner else "your subscription"

        body_text = (
            f"We couldn't process the latest payment for {scope}.\n"
            "Access continues for 48 hours while you update your payment method:\n"
            f"{portal_url}\n"
        )
        body_html = f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2 style="color: #dc3545;">Payment Failed</h2>
            <p>We couldn't process the latest payment for {scope}.</p>
            <p>Access continues for 48 hours while you update your payment method.</p>
            <p><a href="{escape(portal_url)}" style="background: #007bff; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px;">Update payment method</a></p>
        </body>
        </html>
        """

        return self.send([to_email], subject, body_html, body_text)
