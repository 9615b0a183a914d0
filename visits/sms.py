import logging
import re
from typing import Any, Dict, Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_SMS_API_BASE_URL = "https://api.smsleopard.com/v1"


def clean_phone_number(phone: Optional[str], country_code: Optional[str] = None) -> str:
    """
    Reduce a phone number to digits in international form.
    ``0712345678`` and ``712345678`` become ``254712345678`` for the default country code.
    """
    digits = re.sub(r"[^0-9]", "", phone or "")
    if not digits:
        return ""
    code = country_code if country_code is not None else getattr(settings, "VISITS_DEFAULT_COUNTRY_CODE", "254")
    if not code:
        return digits
    if digits.startswith(code):
        return digits
    if digits.startswith("0") and len(digits) == 10:
        return code + digits[1:]
    if len(digits) == 9:
        return code + digits
    return digits


class SmsGateway:
    """Thin client for the bulk SMS HTTP API."""

    def __init__(
        self,
        *,
        api_key: str = "",
        api_secret: str = "",
        sender_id: str = "",
        base_url: str = DEFAULT_SMS_API_BASE_URL,
        timeout: int = 30,
        session=None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.sender_id = sender_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session

    @classmethod
    def from_settings(cls, session=None) -> "SmsGateway":
        return cls(
            api_key=getattr(settings, "VISITS_SMS_API_KEY", ""),
            api_secret=getattr(settings, "VISITS_SMS_API_SECRET", ""),
            sender_id=getattr(settings, "VISITS_SMS_SENDER_ID", ""),
            base_url=getattr(settings, "VISITS_SMS_API_BASE_URL", DEFAULT_SMS_API_BASE_URL),
            timeout=getattr(settings, "VISITS_SMS_TIMEOUT", 30),
            session=session,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @property
    def session(self):
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send(self, phone: str, message: str) -> Optional[Dict[str, Any]]:
        """
        Send one message. Returns None when the gateway is not configured or the
        number is empty; raises on transport errors so the caller's notification
        boundary can log them.
        """
        if not self.is_configured:
            logger.warning("SMS gateway credentials not configured; message to %s not sent.", phone)
            return None
        destination = clean_phone_number(phone)
        if not destination:
            return None
        payload = {
            "source": self.sender_id,
            "message": message,
            "destination": [{"number": destination}],
        }
        response = self.session.post(
            f"{self.base_url}/sms/send",
            json=payload,
            auth=(self.api_key, self.api_secret),
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json() or {}
        if data.get("success") is True:
            recipient = (data.get("recipients") or [{}])[0]
            return {
                "success": True,
                "message_id": recipient.get("id", ""),
                "cost": recipient.get("cost", 0),
                "status": recipient.get("status", "sent"),
            }
        logger.warning("SMS gateway rejected message to %s: %s", destination, data.get("message"))
        return {"success": False, "error": data.get("message") or "Unknown error occurred"}
