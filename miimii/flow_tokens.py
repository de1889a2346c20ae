"""
Flow token service: opaque tokens tying a Flow session to (user, flow type, phone).
"""

import secrets
import logging
from datetime import timedelta

from miimii.errors import FlowTokenExpired, FlowTokenNotFound
from miimii.models import FlowSession
from miimii.session_store import Namespace, SessionStore, session_key

logger = logging.getLogger(__name__)

FLOW_TOKEN_TTL = timedelta(minutes=30)


class FlowTokenService:

    def __init__(self, store: SessionStore, ttl: timedelta = FLOW_TOKEN_TTL):
        self.store = store
        self.ttl = ttl

    def mint(self, user_id: str, flow_type: str, phone: str, initial_screen: str = "") -> str:
        # 16 random bytes, base64url without padding
        token = secrets.token_urlsafe(16)
        now = self.store.clock()
        session = FlowSession(
            flow_token=token,
            user_id=user_id,
            flow_type=flow_type,
            phone=phone,
            initial_screen=initial_screen,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.set(session_key(Namespace.FLOW, token), session.to_dict(), int(self.ttl.total_seconds()))
        logger.info(f"Minted {flow_type} flow token for user {user_id}")
        return token

    def bind(self, token: str) -> FlowSession:
        """Look up a token without consuming it; screens may read it several times."""
        if not token or ":" in token:
            raise FlowTokenNotFound("Unknown flow token")
        envelope = self.store.get_envelope(session_key(Namespace.FLOW, token))
        if envelope is None:
            raise FlowTokenNotFound("Unknown flow token")
        if self.store.is_expired(envelope):
            raise FlowTokenExpired("Flow token expired")
        return FlowSession.from_dict(envelope["payload"])

    def revoke(self, token: str):
        if token and ":" not in token:
            self.store.delete(session_key(Namespace.FLOW, token))
            logger.debug("Revoked flow token")
