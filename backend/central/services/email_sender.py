"""
邮件发送

购买确认邮件和领取链接邮件。发送失败只记录日志，不影响账本变更。

- SMTPEmailSender: 生产环境，使用 SMTP_* 配置
- NullEmailSender: 未配置 SMTP 时使用，只记录日志
- RecordingEmailSender: 测试用，保存发出的邮件
"""
from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from central.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    to_email: str
    subject: str
    text_body: str
    html_body: str | None = None


class EmailSender(ABC):
    """邮件发送抽象"""

    @abstractmethod
    def send(self, message: EmailMessage) -> bool:
        """发送邮件，成功返回 True"""

    def send_bundle_confirmation(
        self,
        *,
        to_email: str,
        bundle_name: str,
        product_names: list[str],
        expires_at: datetime | None,
    ) -> bool:
        lines = [
            "Hi there,",
            "",
            f"Thanks for purchasing {bundle_name}. You now have access to:",
            *[f"  - {name}" for name in product_names],
            "",
            f"Sign in to each product with {to_email} and your access is ready.",
        ]
        if expires_at:
            lines.append(f"Your access is valid until {expires_at:%B %d, %Y}.")
        return self.send(
            EmailMessage(
                to_email=to_email,
                subject=f"Welcome to {bundle_name}! Here's how to get started",
                text_body="\n".join(lines),
            )
        )

    def send_claim_link(
        self, *, to_email: str, bundle_name: str, claim_url: str, expires_at: datetime
    ) -> bool:
        body = "\n".join(
            [
                "Hi there,",
                "",
                f"Thanks for purchasing {bundle_name}.",
                "A few products need some details before we can activate them.",
                f"Complete your setup here: {claim_url}",
                "",
                f"This link expires on {expires_at:%B %d, %Y}.",
            ]
        )
        return self.send(
            EmailMessage(
                to_email=to_email,
                subject=f"Activate your {bundle_name} bundle",
                text_body=body,
            )
        )


class SMTPEmailSender(EmailSender):
    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        use_ssl: bool = False,
        from_email: str,
        from_name: str,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.use_ssl = use_ssl
        self.from_email = from_email
        self.from_name = from_name

    def send(self, message: EmailMessage) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to_email
        msg.attach(MIMEText(message.text_body, "plain"))
        if message.html_body:
            msg.attach(MIMEText(message.html_body, "html"))

        smtp_cls = smtplib.SMTP_SSL if self.use_ssl else smtplib.SMTP
        try:
            with smtp_cls(self.host, self.port, timeout=30) as server:
                if self.use_tls and not self.use_ssl:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.from_email, [message.to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", message.to_email, e)
            return False
        logger.info("Email sent to %s: %s", message.to_email, message.subject)
        return True


class NullEmailSender(EmailSender):
    def send(self, message: EmailMessage) -> bool:
        logger.warning(
            "SMTP not configured, skipping email to %s: %s", message.to_email, message.subject
        )
        return False


class RecordingEmailSender(EmailSender):
    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> bool:
        self.sent.append(message)
        return True


def build_email_sender() -> EmailSender:
    """按配置创建邮件发送器"""
    if not settings.SMTP_HOST:
        return NullEmailSender()
    return SMTPEmailSender(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        username=settings.SMTP_USER,
        password=settings.SMTP_PASSWORD,
        use_tls=settings.SMTP_TLS,
        use_ssl=settings.SMTP_SSL,
        from_email=settings.EMAILS_FROM_EMAIL,
        from_name=settings.EMAILS_FROM_NAME,
    )
