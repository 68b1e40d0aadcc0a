"""
AgencyDesk CRM email service
- Quote delivery to clients/leads (PDF attached)
- Approval / rejection notifications to the agency

Transport: SendGrid when SENDGRID_API_KEY is set, SMTP when SMTP_HOST is set,
otherwise a mock that only logs (dev / tests).
send() makes ONE attempt and never raises: failures come back as DispatchResult.
"""

import asyncio
import base64
import logging
import smtplib
from dataclasses import dataclass, field
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import List, Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, Email, FileContent, FileName, FileType, Mail, To

from config import (
    DISPATCH_TIMEOUT_SECONDS,
    SENDER_EMAIL,
    SENDER_NAME,
    SENDGRID_API_KEY,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USE_SSL,
    SMTP_USER,
)

logger = logging.getLogger("email_service")

TRANSPORT_SENDGRID = "sendgrid"
TRANSPORT_SMTP = "smtp"
TRANSPORT_MOCK = "mock"


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


@dataclass
class DispatchResult:
    success: bool
    transport: str
    error: Optional[str] = None
    recipients: List[str] = field(default_factory=list)


class EmailService:
    """Centralized email sending"""

    def __init__(self, transport: Optional[str] = None, timeout: float = DISPATCH_TIMEOUT_SECONDS):
        self.api_key = SENDGRID_API_KEY
        self.sender = SENDER_EMAIL
        self.sender_name = SENDER_NAME
        self.timeout = timeout
        if transport is None:
            if self.api_key:
                transport = TRANSPORT_SENDGRID
            elif SMTP_HOST:
                transport = TRANSPORT_SMTP
            else:
                transport = TRANSPORT_MOCK
        self.transport = transport
        self.outbox: List[dict] = []  # mock transport only

    # ==================== TRANSPORTS ====================

    def _send_sendgrid(self, to: List[str], subject: str, html_body: str, text_body: Optional[str],
                       attachments: List[EmailAttachment]) -> DispatchResult:
        message = Mail(
            from_email=Email(self.sender, self.sender_name),
            to_emails=[To(address) for address in to],
            subject=subject,
            html_content=html_body,
            plain_text_content=text_body,
        )
        for item in attachments:
            message.add_attachment(Attachment(
                FileContent(base64.b64encode(item.content).decode("ascii")),
                FileName(item.filename),
                FileType(item.mime_type),
                Disposition("attachment"),
            ))

        response = SendGridAPIClient(self.api_key).send(message)
        if response.status_code in [200, 202]:
            return DispatchResult(True, TRANSPORT_SENDGRID, recipients=list(to))
        return DispatchResult(False, TRANSPORT_SENDGRID, error=f"SendGrid status {response.status_code}")

    def _send_smtp(self, to: List[str], subject: str, html_body: str, text_body: Optional[str],
                   attachments: List[EmailAttachment]) -> DispatchResult:
        msg = MIMEMultipart("mixed")
        msg["From"] = formataddr((self.sender_name, self.sender))
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject

        body = MIMEMultipart("alternative")
        if text_body:
            body.attach(MIMEText(text_body, "plain", "utf-8"))
        body.attach(MIMEText(html_body, "html", "utf-8"))
        msg.attach(body)

        for item in attachments:
            maintype, _, subtype = item.mime_type.partition("/")
            part = MIMEBase(maintype, subtype or "octet-stream")
            part.set_payload(item.content)
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", f'attachment; filename="{item.filename}"')
            msg.attach(part)

        smtp_class = smtplib.SMTP_SSL if SMTP_USE_SSL else smtplib.SMTP
        with smtp_class(SMTP_HOST, SMTP_PORT, timeout=self.timeout) as server:
            if not SMTP_USE_SSL:
                server.starttls()
            if SMTP_USER:
                server.login(SMTP_USER, SMTP_PASSWORD)
            server.send_message(msg)
        return DispatchResult(True, TRANSPORT_SMTP, recipients=list(to))

    def _send_mock(self, to: List[str], subject: str, html_body: str, text_body: Optional[str],
                   attachments: List[EmailAttachment]) -> DispatchResult:
        self.outbox.append({
            "to": list(to),
            "subject": subject,
            "html": html_body,
            "text": text_body,
            "attachments": [(a.filename, a.mime_type, len(a.content)) for a in attachments],
        })
        logger.info(f"[EMAIL] (mock) to={to} subject={subject!r} attachments={len(attachments)}")
        return DispatchResult(True, TRANSPORT_MOCK, recipients=list(to))

    # ==================== PUBLIC API ====================

    def send(
        self,
        to,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        attachments: Optional[List[EmailAttachment]] = None,
    ) -> DispatchResult:
        """Single attempt, never raises."""
        recipients = [to] if isinstance(to, str) else list(to)
        attachments = attachments or []
        if not recipients:
            return DispatchResult(False, self.transport, error="No recipient")

        handler = {
            TRANSPORT_SENDGRID: self._send_sendgrid,
            TRANSPORT_SMTP: self._send_smtp,
            TRANSPORT_MOCK: self._send_mock,
        }.get(self.transport)
        if handler is None:
            return DispatchResult(False, self.transport, error=f"Unknown transport {self.transport}")

        try:
            result = handler(recipients, subject, html_body, text_body, attachments)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"[EMAIL] SMTP authentication failed: {str(e)}")
            return DispatchResult(False, self.transport, error=f"SMTP authentication failed: {str(e)}")
        except smtplib.SMTPException as e:
            logger.error(f"[EMAIL] SMTP error: {str(e)}")
            return DispatchResult(False, self.transport, error=f"SMTP error: {str(e)}")
        except Exception as e:
            logger.error(f"[EMAIL] Send exception ({self.transport}): {str(e)}")
            return DispatchResult(False, self.transport, error=str(e))

        if result.success:
            logger.info(f"[EMAIL] Sent via {result.transport} to={recipients} subject={subject!r}")
        else:
            logger.error(f"[EMAIL] Send failed via {result.transport}: {result.error}")
        return result

    async def dispatch(
        self,
        to,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        attachments: Optional[List[EmailAttachment]] = None,
    ) -> DispatchResult:
        """Async entry point: send() in a worker thread, bounded by self.timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.send, to, subject, html_body, text_body, attachments),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[EMAIL] Dispatch timed out after {self.timeout}s (to={to})")
            return DispatchResult(False, self.transport, error=f"Timed out after {self.timeout}s")


# Global instance
email_service = EmailService()


def get_email_service() -> EmailService:
    """FastAPI dependency (overridden in tests)."""
    return email_service
