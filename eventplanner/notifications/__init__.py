from eventplanner.notifications.channels import ChannelSender, GmailEmailChannel, SendReceipt, TwilioSmsChannel
from eventplanner.notifications.classifier import classify_response, clean_email_body
from eventplanner.notifications.service import NotificationService
from eventplanner.notifications.tokens import GoogleOAuthRefresher, TokenManager

__all__ = [
    "ChannelSender", "GmailEmailChannel", "GoogleOAuthRefresher", "NotificationService", "SendReceipt",
    "TokenManager", "TwilioSmsChannel", "classify_response", "clean_email_body",
]
