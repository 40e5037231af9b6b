"""Client for the WhatsApp Cloud API send endpoint."""

import logging
from typing import Any, Optional

import requests

from inbox_relay.config import Settings
from inbox_relay.errors import UpstreamError

logger = logging.getLogger(__name__)


class CloudApiClient:
    """Posts text messages to /{phone_number_id}/messages with a bearer token."""

    def __init__(
        self,
        api_base: str,
        phone_number_id: str,
        token: str,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = f"{api_base.rstrip('/')}/{phone_number_id}/messages"
        self.timeout = timeout
        self._token = token
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CloudApiClient":
        return cls(
            api_base=settings.WA_API_BASE,
            phone_number_id=settings.WA_PHONE_NUMBER_ID,
            token=settings.WA_TOKEN,
            timeout=settings.WA_TIMEOUT_SECONDS,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def send_text(self, to: str, body: str) -> Any:
        """
        Submit a text message and return the decoded response.

        Raises:
            UpstreamError: non-2xx response (payload kept verbatim), or the
                request failed or timed out before a response arrived
        """
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        try:
            resp = self._session.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Cloud API request failed: {e}")
            raise UpstreamError("Cloud API unreachable", status_code=503, payload={"error": str(e)}) from e

        try:
            data = resp.json()
        except ValueError:
            data = {"_raw": resp.text}

        if not resp.ok:
            logger.error(f"Cloud API error {resp.status_code}: {data}")
            raise UpstreamError(
                f"Cloud API rejected the message ({resp.status_code})",
                status_code=resp.status_code,
                payload=data,
            )
        return data

    def close(self) -> None:
        self._session.close()
