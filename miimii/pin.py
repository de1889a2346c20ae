"""
Transaction PIN policy
======================
One policy for chat prompts, Flow PIN screens and PIN changes:

- exactly 4 digits
- PBKDF2-HMAC-SHA256 with a random 16-byte salt, stored as
  ``pbkdf2_sha256$<iterations>$<salt hex>$<hash hex>``
- constant-time comparison
- 3 failures within 15 minutes lock PIN entry for 15 minutes; a success,
  the end of the lock, or 15 quiet minutes since the last failure resets
  the counter
"""

import hmac
import os
import re
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable

from miimii.database import Database
from miimii.errors import AuthenticationFailed, InvalidInput, PinLocked
from miimii.models import User, utcnow
from miimii.phone import mask

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")
ITERATIONS = 100_000
MAX_FAILURES = 3
LOCKOUT = timedelta(minutes=15)
FAILURE_WINDOW = timedelta(minutes=15)


def is_pin_shaped(text: str) -> bool:
    return bool(PIN_PATTERN.match((text or "").strip()))


def hash_pin(pin: str, salt: bytes = None, iterations: int = ITERATIONS) -> str:
    if not is_pin_shaped(pin):
        raise InvalidInput("Your PIN must be exactly 4 digits.")
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${digest.hex()}"


def check_pin(pin: str, stored: str) -> bool:
    try:
        algorithm, iterations, salt_hex, hash_hex = stored.split("$")
    except (AttributeError, ValueError):
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    try:
        salt, rounds = bytes.fromhex(salt_hex), int(iterations)
    except ValueError:
        logger.error("Stored PIN hash is corrupted")
        return False
    if rounds < 1:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(digest.hex(), hash_hex)


def validate_new_pin(pin: str, confirm: str = None) -> str:
    pin = (pin or "").strip()
    if not is_pin_shaped(pin):
        raise InvalidInput("Your PIN must be exactly 4 digits.")
    if confirm is not None and pin != (confirm or "").strip():
        raise InvalidInput("The two PINs don't match. Please try again.")
    return pin


class PinService:

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def set_pin(self, user: User, pin: str) -> User:
        return self.set_pin_hash(user, hash_pin(validate_new_pin(pin)))

    def set_pin_hash(self, user: User, pin_hash: str) -> User:
        """Store a PIN that was hashed earlier (on a Flow screen or a previous turn)."""
        user.pin_hash = pin_hash
        user.pin_failures = 0
        user.pin_locked_until = None
        user.pin_failed_at = None
        self.db.update("users", {"id": user.id}, {
            "pin_hash": user.pin_hash, "pin_failures": 0, "pin_locked_until": None, "pin_failed_at": None,
        })
        logger.info(f"PIN set for {mask(user.phone)}")
        return user

    def locked_until(self, user: User):
        if user.pin_locked_until and self.clock() < user.pin_locked_until:
            return user.pin_locked_until
        return None

    def verify(self, user: User, pin: str) -> None:
        """Raise PinLocked, InvalidInput or AuthenticationFailed; return on success."""
        fresh = self.db.find_one("users", {"id": user.id})
        if fresh:
            latest = User.from_row(fresh)
            user.pin_failures = latest.pin_failures
            user.pin_locked_until = latest.pin_locked_until
            user.pin_failed_at = latest.pin_failed_at
            user.pin_hash = latest.pin_hash

        now = self.clock()
        had_failures = bool(user.pin_failures or user.pin_locked_until)
        if user.pin_locked_until:
            if now < user.pin_locked_until:
                raise PinLocked(user.pin_locked_until)
            # Lock window is over; start counting afresh.
            user.pin_failures = 0
            user.pin_locked_until = None
        elif user.pin_failed_at and now - user.pin_failed_at >= FAILURE_WINDOW:
            user.pin_failures = 0

        if not user.pin_hash:
            raise AuthenticationFailed("No transaction PIN has been set yet.")
        if not is_pin_shaped(pin):
            raise InvalidInput("Please enter your 4-digit PIN.")

        if check_pin(pin.strip(), user.pin_hash):
            if had_failures:
                self.db.update("users", {"id": user.id}, {
                    "pin_failures": 0, "pin_locked_until": None, "pin_failed_at": None,
                })
            user.pin_failed_at = None
            user.pin_failures = 0
            return

        user.pin_failures += 1
        user.pin_failed_at = now
        remaining = MAX_FAILURES - user.pin_failures
        if remaining <= 0:
            user.pin_locked_until = now + LOCKOUT
            self.db.update("users", {"id": user.id}, {
                "pin_failures": user.pin_failures,
                "pin_locked_until": user.pin_locked_until.isoformat(),
                "pin_failed_at": now.isoformat(),
            })
            logger.warning(f"PIN locked for {mask(user.phone)} until {user.pin_locked_until.isoformat()}")
            raise PinLocked(user.pin_locked_until)

        self.db.update("users", {"id": user.id}, {
            "pin_failures": user.pin_failures, "pin_locked_until": None, "pin_failed_at": now.isoformat(),
        })
        logger.info(f"Wrong PIN for {mask(user.phone)} ({user.pin_failures}/{MAX_FAILURES})")
        raise AuthenticationFailed(
            f"Incorrect PIN. {remaining} attempt{'s' if remaining != 1 else ''} left.",
            remaining=remaining,
        )
