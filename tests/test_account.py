from decimal import Decimal

import pytest

from miimii.handlers.account import SETTING_UP
from miimii.state_machine import ConversationEngine

from conftest import text_event


@pytest.fixture
def engine(ctx):
    return ConversationEngine(ctx)


class TestBalance:

    def test_shows_available_only(self, ctx, engine, platform, user):
        ctx.wallet.hold(user.id, Decimal("500"), "AIRTIME_HELD")
        engine.handle(text_event("balance"))

        text = platform.last_text()
        assert "*Balance:* ₦19,500" in text
        assert "Pending" not in text
        assert "₦500" not in text

    def test_recent_activity_listed(self, ctx, engine, platform, user):
        engine.handle(text_event("balance"))
        assert "*Recent:*" in platform.last_text()
        assert "+₦20,000" in platform.last_text()

    def test_wallet_not_ready(self, ctx, engine, platform, user, db):
        db.delete("wallets", {"user_id": user.id})
        engine.handle(text_event("balance"))
        assert platform.last_text() == SETTING_UP
