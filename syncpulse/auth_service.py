from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from syncpulse.models import parse_iso_datetime, serialize_datetime, utc_now
from syncpulse.state_store import StateStore

log = structlog.get_logger()

TOKEN_KEY = "auth.token"
EXPIRES_AT_KEY = "auth.expires_at"


class AuthService:
    """Holds the credential obtained by the out-of-band verification flow.

    The token itself is produced elsewhere (a human completing a one-time code);
    this service only persists it and answers whether it is still usable.
    """

    def __init__(self, state_store: StateStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.state_store = state_store
        self.clock = clock

    def store_credential(self, token: str, expires_at: datetime | None = None) -> None:
        token = str(token or "").strip()
        if not token:
            raise ValueError("token must not be empty")
        self.state_store.set_meta(TOKEN_KEY, token)
        if expires_at is None:
            self.state_store.delete_meta(EXPIRES_AT_KEY)
        else:
            self.state_store.set_meta(EXPIRES_AT_KEY, serialize_datetime(expires_at) or "")
        log.info("Auth credential stored", expires_at=serialize_datetime(expires_at))

    def clear_credential(self) -> None:
        self.state_store.delete_meta(TOKEN_KEY)
        self.state_store.delete_meta(EXPIRES_AT_KEY)
        log.info("Auth credential cleared")

    def current_token(self) -> str | None:
        if not self.has_valid_credential():
            return None
        return self.state_store.get_meta(TOKEN_KEY)

    def has_valid_credential(self) -> bool:
        token = self.state_store.get_meta(TOKEN_KEY)
        if not token:
            return False
        raw_expiry = self.state_store.get_meta(EXPIRES_AT_KEY)
        if not raw_expiry:
            return True
        try:
            expires_at = parse_iso_datetime(raw_expiry)
        except ValueError:
            log.warning("Stored credential has an unreadable expiry", expires_at=raw_expiry)
            return False
        return expires_at is None or expires_at > self.clock()
