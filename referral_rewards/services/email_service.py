"""Email delivery with template rendering"""

import aiosmtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
import logging
from pathlib import Path
from jinja2 import Environment, FileSystemLoader, select_autoescape

from referral_rewards.core.config import settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "emails"

class EmailService:
    """SMTP email sender with Jinja2 templates"""

    def __init__(self):
        self.enabled = settings.EMAIL_ENABLED
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.SMTP_FROM_EMAIL
        self.from_name = settings.SMTP_FROM_NAME

        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(['html', 'xml'])
        )

    def render(self, template_name: str, **context) -> str:
        template = self.env.get_template(template_name)
        return template.render(app_name=settings.APP_NAME, **context)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None
    ) -> bool:
        """Send a plain text email with an optional HTML alternative"""
        if not self.enabled:
            logger.info(f"Email disabled, skipping '{subject}' to {to_email}")
            return False

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = to_email

        msg.attach(MIMEText(body, 'plain', 'utf-8'))
        if html_body:
            msg.attach(MIMEText(html_body, 'html', 'utf-8'))

        async with aiosmtplib.SMTP(
            hostname=self.smtp_host,
            port=self.smtp_port,
            start_tls=True
        ) as smtp:
            if self.smtp_user:
                await smtp.login(self.smtp_user, self.smtp_password)
            await smtp.send_message(msg)

        logger.info(f"Email sent successfully to {to_email}")
        return True

    async def send_referral_reward_email(
        self,
        to_email: str,
        name: str,
        title: str,
        message: str,
        reward_text: Optional[str] = None
    ) -> bool:
        html_body = self.render(
            "referral_reward.html",
            name=name,
            title=title,
            message=message,
            reward_text=reward_text
        )
        body = f"{message}\n\n{reward_text}" if reward_text else message
        return await self.send_email(
            to_email=to_email,
            subject=title,
            body=body,
            html_body=html_body
        )
