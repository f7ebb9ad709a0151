# treeledger/email_system/providers/mailgun_provider.py
"""
Mailgun email provider for secure domains.
"""
import logging
import aiohttp

logger = logging.getLogger(__name__)

MAILGUN_BASE_URLS = {
    'eu': "https://api.eu.mailgun.net/v3",
    'us': "https://api.mailgun.net/v3",
}


class MailgunProvider:
    """Mailgun HTTP API provider."""

    def __init__(self, api_key: str, domain: str, region: str = 'eu', sender: str = None):
        self.api_key = api_key
        self.domain = domain
        self.region = region
        self.sender = sender or f"noreply@{domain}"
        self.base_url = MAILGUN_BASE_URLS.get(region, MAILGUN_BASE_URLS['us'])

        logger.info(f"MailgunProvider initialized: domain={domain}, region={region}")

    async def send_email(self, to: str, subject: str, html_body: str, text_body: str = None) -> bool:
        """
        Returns:
            True if Mailgun accepted the message
        """
        data = {
            "from": f"TreeLedger <{self.sender}>",
            "to": to,
            "subject": subject,
            "html": html_body,
        }
        if text_body:
            data["text"] = text_body

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                        f"{self.base_url}/{self.domain}/messages",
                        auth=aiohttp.BasicAuth("api", self.api_key),
                        data=data,
                        timeout=aiohttp.ClientTimeout(total=30)
                ) as response:
                    if response.status == 200:
                        logger.info(f"✅ Email sent via Mailgun to {to}")
                        return True

                    error_text = await response.text()
                    logger.error(f"Mailgun API error: {response.status} - {error_text}")
                    return False

        except aiohttp.ClientError as e:
            logger.error(f"HTTP error while sending email via Mailgun to {to}: {e}")
            return False

    async def test_connection(self) -> bool:
        """Domain info request; only a 401 counts as failure."""
        if not self.api_key or not self.domain:
            logger.error("Mailgun API key or domain not configured")
            return False

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                        f"{self.base_url}/domains/{self.domain}",
                        auth=aiohttp.BasicAuth("api", self.api_key),
                        timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status == 401:
                        logger.error("Mailgun authentication failed")
                        return False
                    logger.info(f"Mailgun auth check passed (status: {response.status})")
                    return True

        except aiohttp.ClientError as e:
            logger.warning(f"Mailgun connection test failed: {e}")
            return False
