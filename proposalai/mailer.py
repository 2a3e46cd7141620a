# proposalai/mailer.py
# 📄 Messaging collaborator: multipart/alternative emails with Jinja2 {{placeholders}}

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

import html2text
from jinja2 import ChainableUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel

from proposalai.config import settings

logger = logging.getLogger(__name__)

DISPATCH_FAILURE = "DispatchFailure"
DISPATCH_TIMEOUT = "DispatchTimeout"

# Templates are tenant-authored: sandboxed, and unknown {{variables}} (dotted
# ones included) render as "" instead of failing the step
_env = SandboxedEnvironment(undefined=ChainableUndefined, keep_trailing_newline=True)
_html_env = SandboxedEnvironment(undefined=ChainableUndefined, keep_trailing_newline=True, autoescape=True)


def render_template(text: str, context: dict, autoescape: bool = False) -> str:
    """
    Replace {{placeholders}} using Jinja2 and the proposal context.
    With autoescape, values are HTML-escaped (for built-in HTML bodies).
    """
    env = _html_env if autoescape else _env
    try:
        return env.from_string(text).render(**context)
    except TemplateError as e:
        logger.warning("Template rendering error, sending raw text: %s", e)
        return text  # fallback


class DispatchResult(BaseModel):
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def failure(cls, error: str, kind: str = DISPATCH_FAILURE) -> "DispatchResult":
        return cls(ok=False, error=error, error_kind=kind)


class MessageDispatcher:
    """Sends one message and reports the provider id or a structured failure."""

    def send(self, to_email: str, subject: str, body: str) -> DispatchResult:
        raise NotImplementedError


class SMTPDispatcher(MessageDispatcher):
    def __init__(
        self,
        server: str = None,
        port: int = None,
        user: str = None,
        password: str = None,
        sender: str = None,
        bcc_email: str = None,
        timeout: float = None,
    ):
        self.server = server or settings.SMTP_SERVER
        self.port = port or settings.SMTP_PORT
        self.user = user or settings.SMTP_USER
        self.password = password or settings.SMTP_PASSWORD
        self.sender = sender or settings.sender
        self.bcc_email = settings.SMTP_BCC if bcc_email is None else bcc_email
        self.timeout = timeout or settings.SMTP_TIMEOUT_SECONDS

    def build_message(self, to_email: str, subject: str, body: str) -> MIMEMultipart:
        # Convert HTML body to plain text
        plain_text = html2text.html2text(body)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Message-ID"] = make_msgid(domain=self.sender.rsplit("@", 1)[-1] or None)
        if self.bcc_email:
            msg["Bcc"] = self.bcc_email

        msg.attach(MIMEText(plain_text, "plain"))
        msg.attach(MIMEText(body, "html"))
        return msg

    def send(self, to_email: str, subject: str, body: str) -> DispatchResult:
        """
        Sends a multipart/alternative email over SMTP with both plain-text
        and HTML versions. Never raises; failures come back as a result.
        """
        msg = self.build_message(to_email, subject, body)
        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
        except TimeoutError as e:
            logger.error("Timed out sending email to %s: %s", to_email, e)
            return DispatchResult.failure(f"timed out after {self.timeout}s: {e}", DISPATCH_TIMEOUT)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return DispatchResult.failure(str(e) or e.__class__.__name__)
        return DispatchResult(ok=True, message_id=msg["Message-ID"])
