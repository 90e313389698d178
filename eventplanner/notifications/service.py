import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import pytz

from eventplanner.errors import CredentialsMissingError, NotificationNotFoundError, TransientCollaboratorError
from eventplanner.models import (
    OPEN_NOTIFICATION_STATUSES, CanonicalEvent, Channel, EventStatus, Interaction, InteractionType,
    Notification, NotificationStatus, ResponseClassification, ResponseRecord,
)
from eventplanner.notifications.channels import ChannelSender, SendFailedError
from eventplanner.notifications.classifier import classify_response
from eventplanner.notifications.messages import build_email_body, build_sms_body, build_subject
from eventplanner.utils import retry_with_backoff, utc_now

logger = logging.getLogger(__name__)

OPEN_STATUSES = [status.value for status in OPEN_NOTIFICATION_STATUSES]

RESPONSE_EFFECTS = {
    ResponseClassification.APPROVED.value: (EventStatus.APPROVED, InteractionType.APPROVED),
    ResponseClassification.REJECTED.value: (EventStatus.REJECTED, InteractionType.REJECTED),
}


class NotificationService:
    """
    Channel-agnostic approval workflow: send a proposal, attribute and
    classify the reply, apply it to the event exactly once, expire what was
    never answered.
    """

    def __init__(
        self,
        store,
        senders: Dict[str, ChannelSender],
        response_window: timedelta = timedelta(hours=24),
        max_send_retries: int = 3,
        timezone_name: str = "America/Los_Angeles",
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.senders = {Channel(name).value: sender for name, sender in senders.items()}
        self.response_window = response_window
        self.max_send_retries = max_send_retries
        self.tz = pytz.timezone(timezone_name)
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_settings(cls, app_settings, store, senders: Dict[str, ChannelSender], **kwargs) -> "NotificationService":
        return cls(
            store,
            senders,
            response_window=timedelta(hours=app_settings.notifications.response_window_hours),
            max_send_retries=app_settings.notifications.max_send_retries,
            timezone_name=app_settings.household.timezone,
            **kwargs,
        )

    # --- outbound ---

    def send(self, event: CanonicalEvent, recipient: str, channel, urgent: bool = False) -> Notification:
        """
        Sends one approval request and moves the event discovered -> proposed.
        A send that still fails after retries is stored as `failed` and leaves
        the event untouched.
        """
        channel = Channel(channel)
        now = self.clock()
        if channel == Channel.EMAIL:
            subject = build_subject(event, urgent)
            body = build_email_body(event, self.tz, now)
        else:
            subject = None
            body = build_sms_body(event, self.tz, now)

        sender = self.senders.get(channel.value)
        attempts = 0

        def attempt_send():
            nonlocal attempts
            attempts += 1
            if sender is None:
                raise CredentialsMissingError(f"No {channel.value} sender configured")
            return sender.send(recipient, subject, body)

        try:
            receipt = retry_with_backoff(
                attempt_send,
                max_retries=self.max_send_retries,
                sleep=self.sleep,
                logger=logger,
                operation_name=f"{channel.value} notification for '{event.title}'",
            )
        except (TransientCollaboratorError, SendFailedError, CredentialsMissingError) as e:
            notification = Notification(
                event_id=event.id, recipient=recipient, channel=channel, subject=subject, body=body,
                status=NotificationStatus.FAILED, sent_at=now, retry_count=max(0, attempts - 1),
                error_message=str(e),
            )
            self.store.insert_notification(notification)
            logger.error(f"Notification for event {event.id} failed after {attempts} attempts: {e}")
            return notification

        notification = Notification(
            event_id=event.id, recipient=recipient, channel=channel, subject=subject, body=body,
            status=receipt.status, sent_at=now, retry_count=attempts - 1,
            provider_message_id=receipt.provider_message_id if channel == Channel.EMAIL else None,
        )
        self.store.insert_notification(notification)

        proposed = self.store.update_event_status(event.id, EventStatus.PROPOSED,
                                                  expected_from=[EventStatus.DISCOVERED], now=now)
        if proposed is None:
            logger.warning(f"Event {event.id} was not in 'discovered' when proposed; status left as is")
        else:
            event.status = EventStatus.PROPOSED
        logger.info(f"Sent {channel.value} approval request {notification.id} for '{event.title}' to {recipient}")
        return notification

    def mark_delivered(self, notification_id: str, now: Optional[datetime] = None) -> Notification:
        now = now or self.clock()
        updated = self.store.update_notification_if(
            notification_id,
            [NotificationStatus.SENT.value, NotificationStatus.PENDING.value],
            {"status": NotificationStatus.DELIVERED.value, "delivered_at": now},
        )
        if updated is not None:
            return updated
        existing = self.store.get_notification(notification_id)
        if existing is None:
            raise NotificationNotFoundError(notification_id)
        return existing

    # --- inbound ---

    def record_response(self, notification_id: str, raw_text: str, now: Optional[datetime] = None) -> Notification:
        """
        Applies the first response to an open notification inside the response
        window. Anything else is appended to `late_responses` and has no effect.
        """
        now = now or self.clock()
        notification = self.store.get_notification(notification_id)
        if notification is None:
            raise NotificationNotFoundError(notification_id)

        classification = ResponseClassification(classify_response(raw_text, notification.channel))
        updated = self.store.update_notification_if(
            notification_id,
            OPEN_STATUSES,
            {
                "status": classification.value,
                "classification": classification.value,
                "response_text": raw_text,
                "response_at": now,
            },
            sent_after=now - self.response_window,
        )

        if updated is None:
            note = "response window closed" if notification.is_open else f"already {notification.status}"
            self.store.push_late_response(notification_id, ResponseRecord(
                text=raw_text, received_at=now, classification=classification, applied=False, note=note,
            ))
            logger.info(f"Ignored response to notification {notification_id} ({note}): {raw_text!r}")
            return self.store.get_notification(notification_id)

        logger.info(f"Notification {notification_id} answered: {classification.value}")
        self._apply_to_event(updated, classification, now)
        return updated

    def _apply_to_event(self, notification: Notification, classification: ResponseClassification, now: datetime) -> None:
        effect = RESPONSE_EFFECTS.get(classification.value)
        if effect is None:
            return
        target, interaction_type = effect
        event = self.store.update_event_status(notification.event_id, target,
                                               expected_from=[EventStatus.PROPOSED], now=now)
        if event is None:
            logger.warning(f"Event {notification.event_id} is no longer proposed; "
                           f"{classification.value} response not applied to it")
            return
        self.store.record_interaction(Interaction.for_event(event, interaction_type, now))

    def handle_inbound(self, recipient: str, raw_text: str, channel, in_reply_to: Optional[str] = None,
                       now: Optional[datetime] = None) -> Optional[Notification]:
        """
        Attributes an inbound reply to a notification: the email In-Reply-To
        header first, then the recipient's most recent open notification inside
        the response window. Unattributable replies are stored and dropped.
        """
        channel = Channel(channel)
        now = now or self.clock()
        notification = None
        if channel == Channel.EMAIL and in_reply_to:
            notification = self.store.find_by_provider_message_id(in_reply_to.strip())

        if notification is None:
            candidates = self.store.find_open_notifications(recipient, now - self.response_window, OPEN_STATUSES)
            notification = candidates[0] if candidates else None

        if notification is None:
            self.store.record_unmatched_response(recipient, channel.value, raw_text, now, in_reply_to)
            logger.warning(f"No open notification for {channel.value} reply from {recipient}; stored as unmatched")
            return None
        return self.record_response(notification.id, raw_text, now)

    # --- timeouts ---

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Cancels open notifications older than the response window, and their proposed events."""
        now = now or self.clock()
        cutoff = now - self.response_window
        expired = 0
        for notification in self.store.find_expired_open(cutoff, OPEN_STATUSES):
            updated = self.store.update_notification_if(
                notification.id, OPEN_STATUSES, {"status": NotificationStatus.CANCELLED.value},
            )
            if updated is None:
                continue
            expired += 1
            event = self.store.update_event_status(notification.event_id, EventStatus.CANCELLED,
                                                   expected_from=[EventStatus.PROPOSED], now=now)
            if event is not None:
                logger.info(f"Approval for '{event.title}' timed out; event cancelled")
        if expired:
            logger.info(f"Expired {expired} unanswered notifications")
        return expired
