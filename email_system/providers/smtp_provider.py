# treeledger/email_system/providers/smtp_provider.py
"""
SMTP email provider using aiosmtplib.
"""
import logging
import aiosmtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

logger = logging.getLogger(__name__)


class SMTPProvider:
    """SMTP provider for general email domains."""

    def __init__(self, host: str, port: int, username: str, password: str, sender: str = None):
        self.smtp_host = host
        self.smtp_port = port
        self.username = username
        self.password = password
        self.sender = sender or username

        logger.info(f"SMTPProvider initialized: {host}:{port}")

    def _build_message(self, to: str, subject: str, html_body: str, text_body: str = None) -> MIMEMultipart:
        message = MIMEMultipart('alternative')
        message['From'] = f"TreeLedger <{self.sender}>"
        message['To'] = to
        message['Subject'] = subject

        # Plain part first, clients show the last alternative they support
        if text_body:
            message.attach(MIMEText(text_body, 'plain', 'utf-8'))
        message.attach(MIMEText(html_body, 'html', 'utf-8'))
        return message

    async def send_email(self, to: str, subject: str, html_body: str, text_body: str = None) -> bool:
        """
        Returns:
            True if the server accepted the message
        """
        try:
            await aiosmtplib.send(
                self._build_message(to, subject, html_body, text_body),
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.username,
                password=self.password,
                start_tls=True,
                timeout=30,
            )
            logger.info(f"✅ Email sent via SMTP to {to}")
            return True

        except aiosmtplib.SMTPException as e:
            logger.error(f"SMTP error while sending email to {to}: {e}")
            return False
        except OSError as e:
            logger.error(f"SMTP connection error while sending email to {to}: {e}")
            return False

    async def test_connection(self) -> bool:
        """Connect, STARTTLS and log in without sending."""
        client = aiosmtplib.SMTP(hostname=self.smtp_host, port=self.smtp_port, start_tls=True, timeout=10)
        try:
            await client.connect()
            await client.login(self.username, self.password)
            logger.info("SMTP connection test successful")
            return True
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP connection test failed: {e}")
            return False
        finally:
            if client.is_connected:
                await client.quit()
