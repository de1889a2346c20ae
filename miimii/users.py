"""
User repository: lookup by canonical phone, creation on first contact,
and persistence of the one conversation state embedded in the user row.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Tuple

from miimii.database import Database, is_unique_violation
from miimii.models import ConversationState, User, utcnow
from miimii.phone import mask

logger = logging.getLogger(__name__)


class UserRepository:

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def get(self, user_id: str) -> Optional[User]:
        row = self.db.find_one("users", {"id": user_id})
        return User.from_row(row) if row else None

    def get_by_phone(self, phone: str) -> Optional[User]:
        row = self.db.find_one("users", {"phone": phone})
        return User.from_row(row) if row else None

    def get_or_create(self, phone: str, display_name: str = "") -> Tuple[User, bool]:
        user = self.get_by_phone(phone)
        if user:
            if display_name and not user.display_name:
                self.update(user, display_name=display_name)
            return user, False

        now = self.clock()
        user = User(phone=phone, display_name=display_name, created_at=now, updated_at=now)
        try:
            self.db.create("users", user.to_row())
        except Exception as e:
            # Two first messages raced; the other insert won.
            if not is_unique_violation(e):
                raise
            return self.get_by_phone(phone), False
        logger.info(f"New user {mask(phone)}")
        return user, True

    def update(self, user: User, **values: Any) -> User:
        for name, value in values.items():
            setattr(user, name, value)
        user.updated_at = self.clock()
        row = user.to_row()
        changed = {name: row[name] for name in values}
        changed["updated_at"] = row["updated_at"]
        self.db.update("users", {"id": user.id}, changed)
        return user

    def set_conversation(self, user: User, state: Optional[ConversationState]):
        user.conversation = state
        self.db.update("users", {"id": user.id}, {
            "conversation": json.dumps(state.to_dict()) if state else None,
            "updated_at": self.clock().isoformat(),
        })

    def all_onboarded(self):
        return [User.from_row(row) for row in self.db.find_all("users", {"onboarding_step": "completed"})]
