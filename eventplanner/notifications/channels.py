"""
Outbound transports. Each sender turns (recipient, subject, body) into one
provider call and reports what the provider said about it.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

import requests

from eventplanner.errors import CredentialsMissingError, EventPlannerError, TransientCollaboratorError
from eventplanner.models import Channel, NotificationStatus

logger = logging.getLogger(__name__)


class SendFailedError(EventPlannerError):
    """The provider refused the message outright. Not retried."""


@dataclass(frozen=True)
class SendReceipt:
    status: str = NotificationStatus.SENT.value
    provider_message_id: Optional[str] = None


def _raise_for_transport(response: requests.Response, provider: str) -> None:
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientCollaboratorError(f"{provider} returned {response.status_code}")
    if response.status_code >= 400:
        raise SendFailedError(f"{provider} rejected the message ({response.status_code}): {response.text[:200]}")


class ChannelSender(ABC):
    channel: Channel

    @abstractmethod
    def send(self, recipient: str, subject: Optional[str], body: str) -> SendReceipt:
        """Raises TransientCollaboratorError for retryable failures."""


class TwilioSmsChannel(ChannelSender):
    """Twilio Messages API over plain HTTPS."""

    channel = Channel.SMS
    API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

    def __init__(self, account_sid: Optional[str], auth_token: Optional[str], from_number: Optional[str],
                 session: Optional[requests.Session] = None, timeout: float = 15.0):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, recipient: str, subject: Optional[str], body: str) -> SendReceipt:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise CredentialsMissingError("Twilio account sid, auth token and sender number are required")
        try:
            response = self.session.post(
                self.API_URL.format(sid=self.account_sid),
                data={"To": recipient, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientCollaboratorError(f"Twilio request failed: {e}") from e
        _raise_for_transport(response, "Twilio")

        # Twilio queues most messages; delivery is confirmed later by status callback.
        twilio_status = response.json().get("status", "queued")
        status = NotificationStatus.PENDING if twilio_status in ("queued", "accepted", "sending") else NotificationStatus.SENT
        return SendReceipt(status=status.value)


class GmailEmailChannel(ChannelSender):
    """
    Gmail API `messages.send`. The message carries our own RFC 5322 Message-ID,
    which is what replies quote in In-Reply-To, so it doubles as the provider id.
    """

    channel = Channel.EMAIL

    def __init__(self, token_manager, sender: Optional[str], api_url: str, user_id: str = "household",
                 session: Optional[requests.Session] = None, timeout: float = 15.0):
        self.token_manager = token_manager
        self.sender = sender
        self.api_url = api_url
        self.user_id = user_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def build_message(self, recipient: str, subject: Optional[str], body: str) -> MIMEText:
        message = MIMEText(body, "plain", "utf-8")
        message["To"] = recipient
        if self.sender:
            message["From"] = self.sender
        message["Subject"] = subject or ""
        domain = self.sender.split("@", 1)[1] if self.sender and "@" in self.sender else None
        message["Message-ID"] = make_msgid(domain=domain)
        return message

    def send(self, recipient: str, subject: Optional[str], body: str) -> SendReceipt:
        message = self.build_message(recipient, subject, body)
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")
        token = self.token_manager.get_access_token(self.user_id, "google")
        try:
            response = self.session.post(
                self.api_url,
                json={"raw": raw},
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientCollaboratorError(f"Gmail request failed: {e}") from e
        _raise_for_transport(response, "Gmail")
        return SendReceipt(status=NotificationStatus.SENT.value, provider_message_id=message["Message-ID"])
