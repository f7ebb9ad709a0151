# treeledger/email_system/services/email_service.py
"""
Email transport for one-time verification codes.
Routes each recipient to SMTP or Mailgun by domain, with fallback.
"""
import logging
from typing import Dict, List, Any

from config import Config
from email_system.providers import SMTPProvider, MailgunProvider

logger = logging.getLogger(__name__)

OTP_SUBJECT = "Your verification code"

OTP_PURPOSE_LABELS = {
    "deposit": "confirm your deposit request",
    "withdrawal": "confirm your withdrawal request",
}


def render_otp_message(code: str, purpose: str, ttl_seconds: int) -> Dict[str, str]:
    """Plain and HTML bodies for a verification code mail."""
    kind = purpose.split(':', 1)[0]
    action = OTP_PURPOSE_LABELS.get(kind, "confirm your request")
    minutes = max(ttl_seconds // 60, 1)

    text = (
        f"Your verification code is {code}.\n"
        f"Use it to {action}. The code expires in {minutes} minutes.\n"
        f"If you did not make this request, ignore this message."
    )
    html = (
        f"<p>Your verification code is <b>{code}</b>.</p>"
        f"<p>Use it to {action}. The code expires in {minutes} minutes.</p>"
        f"<p>If you did not make this request, ignore this message.</p>"
    )
    return {"text": text, "html": html}


class EmailService:
    """
    OTP delivery over multiple providers.

    Features:
    - Provider selection based on recipient domain
    - Secure domains routed to Mailgun first
    - Fallback between providers

    Usage:
        email_service = EmailService()
        await email_service.initialize()
        delivered = await email_service.send_otp('user@example.com', '123456', 'withdrawal:42')
    """

    def __init__(self):
        self.providers: Dict[str, SMTPProvider | MailgunProvider] = {}
        self.secure_domains: List[str] = []
        self._initialized = False

    async def initialize(self) -> None:
        """
        Create providers from Config. Called during startup.
        """
        if self._initialized:
            logger.warning("EmailService already initialized")
            return

        logger.info("Initializing EmailService...")

        smtp_host = Config.get(Config.SMTP_HOST)
        smtp_username = Config.get(Config.SMTP_USERNAME)
        smtp_password = Config.get(Config.SMTP_PASSWORD)

        if smtp_host and smtp_username and smtp_password:
            smtp_port = Config.get(Config.SMTP_PORT, 587)
            self.providers['smtp'] = SMTPProvider(
                host=smtp_host,
                port=smtp_port,
                username=smtp_username,
                password=smtp_password,
                sender=Config.get(Config.SMTP_FROM_EMAIL) or smtp_username,
            )
            logger.info(f"✓ SMTP provider added: {smtp_host}:{smtp_port}")
        else:
            logger.warning("SMTP provider not configured (missing credentials)")

        mailgun_api_key = Config.get(Config.MAILGUN_API_KEY)
        mailgun_domain = Config.get(Config.MAILGUN_DOMAIN)

        if mailgun_api_key and mailgun_domain:
            mailgun_region = Config.get(Config.MAILGUN_REGION, 'eu')
            self.providers['mailgun'] = MailgunProvider(
                api_key=mailgun_api_key,
                domain=mailgun_domain,
                region=mailgun_region,
                sender=Config.get(Config.MAILGUN_FROM_EMAIL) or f"noreply@{mailgun_domain}",
            )
            logger.info(f"✓ Mailgun provider added: {mailgun_domain} ({mailgun_region})")
        else:
            logger.warning("Mailgun provider not configured (missing credentials)")

        self._load_secure_domains()

        if not self.providers:
            logger.error("❌ No email providers configured, verification codes cannot be delivered")
        else:
            logger.info(f"✓ EmailService initialized with {len(self.providers)} provider(s)")

        self._initialized = True

    def _load_secure_domains(self) -> None:
        """Domains that go through Mailgun first ("@t-online.de, gmx.de")."""
        domains_str = Config.get(Config.SECURE_EMAIL_DOMAINS, '') or ''
        domains = [d.strip().lower() for d in domains_str.split(',') if d.strip()]
        self.secure_domains = [d if d.startswith('@') else f'@{d}' for d in domains]

        if self.secure_domains:
            logger.info(f"Loaded {len(self.secure_domains)} secure domains: {self.secure_domains}")

    @staticmethod
    def _get_email_domain(email: str) -> str:
        if '@' in email:
            return '@' + email.split('@')[1].lower()
        return ''

    def _select_provider_for_email(self, email: str) -> List[str]:
        """
        Provider names in priority order for a recipient.

        Secure domains → Mailgun, SMTP; everything else → SMTP, Mailgun.
        """
        if self._get_email_domain(email) in self.secure_domains:
            provider_order = ['mailgun', 'smtp']
        else:
            provider_order = ['smtp', 'mailgun']

        available_order = [p for p in provider_order if p in self.providers]
        logger.debug(f"Provider order for {email}: {available_order}")
        return available_order

    async def get_providers_status(self) -> Dict[str, bool]:
        status = {}
        for provider_name, provider in self.providers.items():
            try:
                status[provider_name] = await provider.test_connection()
            except Exception as e:
                logger.error(f"Error testing {provider_name}: {e}")
                status[provider_name] = False
        return status

    async def send_email(self, to: str, subject: str, html_body: str, text_body: str = None) -> bool:
        """
        Send through the first provider that accepts the message.

        Returns:
            True if any provider delivered
        """
        if not to:
            logger.error("Recipient email not provided")
            return False

        provider_order = self._select_provider_for_email(to)
        if not provider_order:
            logger.error("No available providers for sending email")
            return False

        for provider_name in provider_order:
            provider = self.providers[provider_name]
            if await provider.send_email(to=to, subject=subject, html_body=html_body, text_body=text_body):
                logger.info(f"✅ Email sent to {to} via {provider_name}")
                return True
            logger.warning(f"Failed to send via {provider_name}, trying next provider...")

        logger.error(f"❌ Failed to send email to {to} via all providers")
        return False

    async def send_otp(self, destination: str, code: str, purpose: str) -> bool:
        """OTP delivery interface used by OTPService."""
        bodies = render_otp_message(code, purpose, Config.get(Config.OTP_TTL_SECONDS, 600))
        return await self.send_email(
            to=destination,
            subject=OTP_SUBJECT,
            html_body=bodies["html"],
            text_body=bodies["text"],
        )

    def get_config_info(self) -> Dict[str, Any]:
        return {
            'smtp': {
                'configured': 'smtp' in self.providers,
                'host': Config.get(Config.SMTP_HOST, 'Not configured'),
                'port': Config.get(Config.SMTP_PORT, 587),
            },
            'mailgun': {
                'configured': 'mailgun' in self.providers,
                'domain': Config.get(Config.MAILGUN_DOMAIN, 'Not configured'),
                'region': Config.get(Config.MAILGUN_REGION, 'eu'),
            },
            'secure_domains': self.secure_domains,
            'providers_count': len(self.providers)
        }
