import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import requests

from eventplanner.errors import CredentialsMissingError, TransientCollaboratorError
from eventplanner.utils import create_retrying_session, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class GoogleOAuthRefresher:
    """
    Exchanges a refresh token for a new access token at the OAuth token endpoint.

    The default session retries throttled and 5xx responses, POST included.
    """

    def __init__(self, token_url: str, client_id: Optional[str], client_secret: Optional[str],
                 session: Optional[requests.Session] = None, timeout: float = 15.0):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or create_retrying_session(allowed_methods=("POST",))
        self.timeout = timeout

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        if not self.client_id or not self.client_secret:
            raise CredentialsMissingError("OAuth client id/secret are not configured")
        try:
            response = self.session.post(self.token_url, data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientCollaboratorError(f"Token refresh request failed: {e}") from e

        if response.status_code in (400, 401):
            raise CredentialsMissingError(f"Token refresh rejected ({response.status_code}); re-authorization required")
        if response.status_code != 200:
            raise TransientCollaboratorError(f"Token endpoint returned {response.status_code}")
        return response.json()


class TokenManager:
    """
    Hands out access tokens per (user, provider), refreshing them when they are
    within `refresh_margin` of expiry. Refreshed tokens are persisted back to the
    store; a missing refresh token raises CredentialsMissingError.
    """

    def __init__(self, store, refresher, refresh_margin: timedelta = timedelta(minutes=5),
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.refresher = refresher
        self.refresh_margin = refresh_margin
        self.clock = clock
        self._lock = threading.Lock()

    def get_access_token(self, user: str, provider: str = "google") -> str:
        with self._lock:
            tokens = self.store.get_oauth_tokens(user, provider)
            if not tokens:
                raise CredentialsMissingError(f"No stored {provider} credentials for {user}")

            now = self.clock()
            expires_at = ensure_utc(tokens.get("expires_at"))
            if tokens.get("access_token") and expires_at is not None and expires_at - now > self.refresh_margin:
                return tokens["access_token"]

            refresh_token = tokens.get("refresh_token")
            if not refresh_token:
                raise CredentialsMissingError(f"No refresh token for {user}/{provider}")

            logger.info(f"Refreshing {provider} access token for {user}")
            refreshed = self.refresher.refresh(refresh_token)
            updated = {
                "access_token": refreshed["access_token"],
                "refresh_token": refreshed.get("refresh_token", refresh_token),
                "expires_at": now + timedelta(seconds=int(refreshed.get("expires_in", 3600))),
                "refreshed_at": now,
            }
            self.store.save_oauth_tokens(user, provider, updated)
            return updated["access_token"]
