"""
auth/sms.py -- Delivery channels for one-time passwords.

Two channels:
  LoggingSmsChannel -- development default. Writes the message to the log so
      a developer can read the code locally. Never use in production.
  TwilioSmsChannel  -- posts to the Twilio Messages REST endpoint with a
      shared requests.Session (connection pooling across sends).

send() returns True when the provider accepted the message and False on any
network or HTTP failure. Failures are logged, not raised: the caller reports
delivery status to the client and the challenge stays valid for a resend.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import requests

from core.config import Settings

logger = logging.getLogger("scopegate.auth.sms")

_TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
_TIMEOUT = 10


class SmsChannel:
    """Interface for OTP delivery."""

    name = "base"

    def send(self, phone: str, message: str) -> bool:
        raise NotImplementedError


class LoggingSmsChannel(SmsChannel):
    name = "log"

    def send(self, phone: str, message: str) -> bool:
        logger.info("SMS to %s: %s", phone, message)
        return True


class TwilioSmsChannel(SmsChannel):
    name = "twilio"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, session: requests.Session | None = None):
        self._url = _TWILIO_URL.format(sid=account_sid)
        self._from = from_number
        self._session = session or requests.Session()
        self._session.auth = (account_sid, auth_token)
        self._session.max_redirects = 3

    def send(self, phone: str, message: str) -> bool:
        try:
            resp = self._session.post(
                self._url,
                data={"From": self._from, "To": phone, "Body": message},
                timeout=_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Twilio send to %s failed: %s", phone, exc)
            return False
        logger.info("Twilio accepted SMS to %s (status %d)", phone, resp.status_code)
        return True


def channel_from_settings(settings: Settings) -> SmsChannel:
    if settings.twilio_configured:
        return TwilioSmsChannel(settings.twilio_account_sid, settings.twilio_auth_token, settings.twilio_from_number)
    if not settings.debug:
        logger.warning("No SMS provider configured -- OTP codes will be written to the log")
    return LoggingSmsChannel()
