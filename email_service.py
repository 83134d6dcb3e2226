# email_service.py
import logging
import smtplib
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from config import settings
from errors import DeliveryError

logger = logging.getLogger(__name__)

BRAND = "BMO"


class EmailSender:
    """SMTP sender with synchronous retry and exponential backoff."""

    def __init__(self, host=None, port=None, user=None, password=None, use_ssl=None,
                 sender=None, retries=None, delay=None):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.user = user or settings.SMTP_USER
        self.password = password or settings.SMTP_PASS
        self.use_ssl = settings.SMTP_USE_SSL if use_ssl is None else use_ssl
        self.sender = sender or settings.EMAIL_FROM or self.user or "noreply@example.com"
        self.retries = retries or settings.EMAIL_RETRIES
        self.delay = settings.EMAIL_RETRY_DELAY if delay is None else delay

    def _build(self, to_email: str, subject: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = f'"{BRAND} Support" <{self.sender}>'
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        if not self.host:
            raise RuntimeError("Email not configured on server")
        smtp_cls = smtplib.SMTP_SSL if self.use_ssl else smtplib.SMTP
        with smtp_cls(self.host, self.port, timeout=30) as server:
            if not self.use_ssl:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.sender, [msg["To"]], msg.as_string())

    def send(self, to_email: str, subject: str, html_body: str) -> None:
        msg = self._build(to_email, subject, html_body)
        for attempt in range(1, self.retries + 1):
            try:
                self._deliver(msg)
                logger.info("Email '%s' sent on attempt %d", subject, attempt)
                return
            except Exception as e:
                logger.warning("Email send attempt %d failed: %s", attempt, e)
                if attempt == self.retries:
                    raise DeliveryError(f"Failed to send email after {self.retries} attempts: {str(e)[:200]}")
                time.sleep(self.delay * (2 ** (attempt - 1)))

    def verify(self) -> bool:
        try:
            smtp_cls = smtplib.SMTP_SSL if self.use_ssl else smtplib.SMTP
            with smtp_cls(self.host, self.port, timeout=10) as server:
                server.noop()
            return True
        except Exception as e:
            logger.warning("Email transporter verification failed: %s", e)
            return False


def _code_block(title: str, code: str, color: str) -> str:
    return f"""
        <div style="background-color: #f5f5f5; padding: 20px; border-radius: 5px; text-align: center; margin: 20px 0;">
          <h3 style="color: #333; margin: 0 0 10px 0;">{title}</h3>
          <div style="font-size: 32px; font-weight: bold; color: {color}; letter-spacing: 5px;">{code}</div>
        </div>
    """


def send_verification_email(sender: EmailSender, email: str, code: str) -> None:
    html_body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2>Welcome to {BRAND}!</h2>
      <p>Please verify your email address to complete your registration.</p>
      {_code_block("Your Verification Code", code, "#4CAF50")}
      <p>Enter this 6-digit code in the app to verify your email address.</p>
      <p>If you didn't request this verification, please ignore this email.</p>
    </div>
    """
    sender.send(email, f"Verify Your Email - {BRAND}", html_body)


def send_password_reset_email(sender: EmailSender, email: str, code: str) -> None:
    html_body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2>Password Reset Request</h2>
      <p>You requested a password reset for your {BRAND} account.</p>
      {_code_block("Your Reset Code", code, "#2196F3")}
      <p>This code will expire in 10 minutes.</p>
      <p>If you didn't request this reset, please ignore this email.</p>
    </div>
    """
    sender.send(email, f"Password Reset - {BRAND}", html_body)


def send_child_creation_email(sender: EmailSender, parent_email: str, child_name: str, specialist_name: str) -> None:
    html_body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2>New Child Profile Created</h2>
      <p>A new child profile for <strong>{child_name}</strong> has been created and linked to your
      account by specialist <strong>{specialist_name}</strong>.</p>
      <p>You can now view this profile in your parent dashboard.</p>
    </div>
    """
    sender.send(parent_email, f"New Child Profile Created - {BRAND}", html_body)
