import asyncio
import html
import logging
import secrets
import smtplib
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Optional

from ..core.cache import CacheClient
from ..core.config import (
    EMAIL_CODE_TTL_SECONDS,
    EMAIL_FROM_ADDRESS,
    EMAIL_FROM_NAME,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_SERVER,
    SMTP_USE_SSL,
    SMTP_USERNAME,
)
from ..core.errors import UpstreamUnavailableError
from .sentences import DEFAULT_SENTENCE, SentenceQueue

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
EMAIL_CODE_KEY_PREFIX = "email_code:"


class EmailUnavailableError(UpstreamUnavailableError):
    public_message = "Email service unavailable"


def generate_verification_code(length: int = CODE_LENGTH) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def email_code_key(email: str) -> str:
    return f"{EMAIL_CODE_KEY_PREFIX}{email.strip().lower()}"


def render_code_email(code: str, sentence: Dict[str, Any], year: Optional[int] = None) -> str:
    text = sentence.get("hitokoto") if isinstance(sentence.get("hitokoto"), str) else None
    source = sentence.get("from") if isinstance(sentence.get("from"), str) else None
    author = sentence.get("from_who") if isinstance(sentence.get("from_who"), str) else None
    attribution = html.escape(source or DEFAULT_SENTENCE["from"])
    if author:
        attribution = f"{html.escape(author)}, {attribution}"
    return (
        "<html><body>"
        "<p>Your verification code is:</p>"
        f"<h2 style=\"letter-spacing:4px\">{html.escape(code)}</h2>"
        f"<p>The code expires in {EMAIL_CODE_TTL_SECONDS // 60} minutes.</p>"
        f"<blockquote>{html.escape(text or DEFAULT_SENTENCE['hitokoto'])}"
        f"<br/>&mdash; {attribution}</blockquote>"
        f"<p>&copy; {year or datetime.utcnow().year}</p>"
        "</body></html>"
    )


class SmtpSender:
    def __init__(
        self,
        host: str = SMTP_SERVER,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        use_ssl: bool = SMTP_USE_SSL,
        from_address: str = EMAIL_FROM_ADDRESS,
        from_name: str = EMAIL_FROM_NAME,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.from_address = from_address
        self.from_name = from_name

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(host=self.host, port=self.port, timeout=30)
        conn = smtplib.SMTP(host=self.host, port=self.port, timeout=30)
        conn.starttls()
        return conn

    def send(self, to_address: str, subject: str, body_html: str) -> None:
        if not self.host:
            raise EmailUnavailableError("SMTP_SERVER is not configured")
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_address))
        message["To"] = to_address
        message.set_content("Please view this message in an HTML capable client.")
        message.add_alternative(body_html, subtype="html")
        try:
            with self._connect() as conn:
                if self.username:
                    conn.login(self.username, self.password)
                conn.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailUnavailableError(f"SMTP delivery to {to_address} failed: {exc}") from exc

    async def send_async(self, to_address: str, subject: str, body_html: str) -> None:
        await asyncio.to_thread(self.send, to_address, subject, body_html)


class EmailCodeService:
    def __init__(
        self,
        cache: CacheClient,
        sender: SmtpSender,
        sentences: SentenceQueue,
        code_ttl: int = EMAIL_CODE_TTL_SECONDS,
    ):
        self.cache = cache
        self.sender = sender
        self.sentences = sentences
        self.code_ttl = code_ttl

    async def send_code(self, email: str) -> None:
        sentence = await self.sentences.next_sentence()
        code = generate_verification_code()
        await self.cache.set(email_code_key(email), code, ttl=self.code_ttl)
        await self.sender.send_async(email, "Email verification code", render_code_email(code, sentence))
        logger.info("Verification code sent to %s", email)

