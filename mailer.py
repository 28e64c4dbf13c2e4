"""
Outbound email over SMTP.

One Mailer is built at startup from the SMTP_* / EMAIL_* environment and
handed to the routes that need it.
"""
import os
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger(__name__)

OTP_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; border: 1px solid #e0e0e0; border-radius: 5px;">
  <h1 style="color: #4CAF50; text-align: center;">{heading}</h1>
  <p style="font-size: 16px;">Hello {name},</p>
  <p style="font-size: 16px;">{intro}</p>
  <div style="background-color: #f8f8f8; padding: 15px; text-align: center; margin: 20px 0; border-radius: 4px;">
    <h2 style="margin: 0; color: #4CAF50; letter-spacing: 5px; font-size: 28px;">{code}</h2>
  </div>
  <p style="font-size: 16px;">This code will expire in {minutes} minutes.</p>
  <p style="font-size: 16px;">If you did not request this verification, please ignore this email.</p>
</div>
"""


class MailerError(Exception):
    pass


class Mailer:
    def __init__(self, host: Optional[str], port: int = 465, username: Optional[str] = None,
                 password: Optional[str] = None, sender: Optional[str] = None, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "Mailer":
        return cls(
            host=os.getenv("SMTP_HOST"),
            port=int(os.getenv("SMTP_PORT", 465)),
            username=os.getenv("EMAIL_USER"),
            password=os.getenv("EMAIL_PASS"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def _connect(self) -> smtplib.SMTP_SSL:
        conn = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout,
                                context=ssl.create_default_context())
        if self.username:
            conn.login(self.username, self.password or "")
        return conn

    def verify(self) -> bool:
        """Check that the SMTP server accepts our credentials. Never raises."""
        if not self.configured:
            logger.warning("SMTP_HOST not set, outgoing email is disabled")
            return False
        try:
            with self._connect():
                pass
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP server connection error: %s", e)
            return False
        logger.info("SMTP server connection successful")
        return True

    def send(self, to: str, subject: str, html: str) -> None:
        if not self.configured:
            raise MailerError("SMTP is not configured")
        msg = EmailMessage()
        if self.sender:
            msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        try:
            with self._connect() as conn:
                conn.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(str(e)) from e

    def send_otp(self, to: str, name: str, code: str, minutes: int, resend: bool = False) -> None:
        if resend:
            subject = "New verification code - Eko Seller"
            heading = "Eko Seller Verification"
            intro = "You requested a new verification code. Please use the code below:"
        else:
            subject = "Verify your account - Eko Seller"
            heading = "Welcome to Eko Seller!"
            intro = "Thank you for registering. To verify your account, please use the code below:"
        html = OTP_TEMPLATE.format(heading=heading, name=name, intro=intro, code=code, minutes=minutes)
        self.send(to, subject, html)
