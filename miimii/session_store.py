"""
Session Store for MiiMii
========================
Namespaced key/value store with TTL for short-lived conversational data:
Flow tokens, login sessions and per-feature scratch keys.

Keys look like ``<namespace>:<identifier>[:<subtype>]``. Stored values are
wrapped in an envelope::

    {"feature": ..., "namespace": ..., "createdAt": ..., "expiresAt": ..., "payload": ...}

A read whose expected feature differs from the stored one returns nothing
and logs a warning.
"""

import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from miimii.database import Database
from miimii.models import utcnow

logger = logging.getLogger(__name__)

# Backends keep expired envelopes around a little longer so that readers can
# tell "expired" apart from "never existed".
EXPIRED_GRACE = timedelta(hours=1)


class Namespace(str, Enum):
    ONBOARDING = "onboarding"
    TRANSFER = "transfer"
    DATA_PURCHASE = "data_purchase"
    AIRTIME = "airtime"
    BILLS = "bills"
    LOGIN = "login"
    PIN_MANAGEMENT = "pin_management"
    WALLET = "wallet"
    VIRTUAL_CARD = "virtual_card"
    FLOW = "flow"


def session_key(namespace: Namespace, identifier: str, subtype: str = None) -> str:
    namespace = Namespace(namespace)
    if not identifier or ":" in str(identifier):
        raise ValueError(f"Invalid session identifier: {identifier!r}")
    key = f"{namespace.value}:{identifier}"
    if subtype:
        key += f":{subtype}"
    return key


def namespace_of(key: str) -> Namespace:
    prefix = key.split(":", 1)[0]
    try:
        return Namespace(prefix)
    except ValueError:
        raise ValueError(f"Unknown session namespace in key {key!r}")


# ============================================================================
# BACKENDS
# ============================================================================

class DatabaseKVBackend:
    """kv_store table; the default backend."""

    def __init__(self, db: Database):
        self.db = db

    def put(self, key: str, value: str, expires_at: datetime):
        with self.db.transaction() as repo:
            repo.delete("kv_store", {"key": key})
            repo.create("kv_store", {
                "key": key,
                "value": value,
                "expires_at": (expires_at + EXPIRED_GRACE).isoformat(),
            })

    def fetch(self, key: str) -> Optional[str]:
        row = self.db.find_one("kv_store", {"key": key})
        return row["value"] if row else None

    def remove(self, key: str):
        self.db.delete("kv_store", {"key": key})

    def purge_expired(self) -> int:
        return self.db.delete("kv_store", {"expires_at__lt": utcnow().isoformat()})

    name = "database"


class RedisBackend:

    def __init__(self, url: str):
        import redis

        self.client = redis.Redis.from_url(url, decode_responses=True)

    def put(self, key: str, value: str, expires_at: datetime):
        ttl = int((expires_at + EXPIRED_GRACE - utcnow()).total_seconds())
        self.client.setex(key, max(ttl, 1), value)

    def fetch(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def remove(self, key: str):
        self.client.delete(key)

    def purge_expired(self) -> int:
        return 0

    name = "redis"


# ============================================================================
# STORE
# ============================================================================

class SessionStore:

    def __init__(self, backend, clock: Callable[[], datetime] = utcnow):
        self.backend = backend
        self.clock = clock

    @property
    def backend_name(self) -> str:
        return getattr(self.backend, "name", type(self.backend).__name__)

    def set(self, key: str, value: Any, ttl_seconds: int, feature: str = None):
        namespace = namespace_of(key)
        now = self.clock()
        envelope = {
            "feature": feature or namespace.value,
            "namespace": namespace.value,
            "createdAt": now.isoformat(),
            "expiresAt": (now + timedelta(seconds=ttl_seconds)).isoformat(),
            "payload": value,
        }
        self.backend.put(key, json.dumps(envelope, default=str), now + timedelta(seconds=ttl_seconds))

    def get(self, key: str, feature: str = None) -> Optional[Any]:
        envelope = self.get_envelope(key, feature)
        if envelope is None or self._expired(envelope):
            return None
        return envelope["payload"]

    def get_envelope(self, key: str, feature: str = None) -> Optional[Dict[str, Any]]:
        """The raw envelope, including an expired one the backend still holds."""
        namespace = namespace_of(key)
        raw = self.backend.fetch(key)
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable session value at {namespace.value}:*")
            self.backend.remove(key)
            return None

        if envelope.get("namespace") != namespace.value:
            logger.warning(
                f"Session namespace mismatch at {namespace.value}:*: stored {envelope.get('namespace')!r}"
            )
            return None
        expected = feature or namespace.value
        if envelope.get("feature") != expected:
            logger.warning(
                f"Session feature mismatch at {namespace.value}:*: "
                f"expected {expected!r}, stored {envelope.get('feature')!r}"
            )
            return None
        return envelope

    def delete(self, key: str):
        namespace_of(key)
        self.backend.remove(key)

    def is_expired(self, envelope: Dict[str, Any]) -> bool:
        return self._expired(envelope)

    def _expired(self, envelope: Dict[str, Any]) -> bool:
        return self.clock() >= datetime.fromisoformat(envelope["expiresAt"])

    def purge_expired(self) -> int:
        removed = self.backend.purge_expired()
        if removed:
            logger.info(f"Purged {removed} expired session keys")
        return removed


def build_session_store(db: Database, redis_url: str = "") -> SessionStore:
    if redis_url:
        logger.info("Session store: redis")
        return SessionStore(RedisBackend(redis_url))
    logger.info("Session store: database")
    return SessionStore(DatabaseKVBackend(db))
