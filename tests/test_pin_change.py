import pytest

from miimii.errors import AuthenticationFailed
from miimii.state_machine import ConversationEngine

from conftest import text_event


@pytest.fixture
def engine(ctx):
    return ConversationEngine(ctx)


def reload(ctx, user):
    return ctx.users.get(user.id)


class TestChangePin:

    def test_full_change(self, ctx, engine, platform, user):
        engine.handle(text_event("change pin"))
        assert "current" in platform.last_text()
        engine.handle(text_event("1234"))
        assert "new" in platform.last_text()
        engine.handle(text_event("5678"))
        engine.handle(text_event("5678"))
        assert platform.last_text() == "✅ Your transaction PIN has been changed."

        fresh = reload(ctx, user)
        assert fresh.conversation is None
        ctx.pins.verify(fresh, "5678")
        with pytest.raises(AuthenticationFailed):
            ctx.pins.verify(fresh, "1234")

    def test_mismatch_asks_again(self, ctx, engine, platform, user):
        for text in ("change pin", "1234", "5678", "5679"):
            engine.handle(text_event(text))
        assert "don't match" in platform.last_text()
        engine.handle(text_event("4444"))
        engine.handle(text_event("4444"))
        ctx.pins.verify(reload(ctx, user), "4444")

    def test_wrong_current_pin_counts_as_failure(self, ctx, engine, platform, user):
        engine.handle(text_event("change pin"))
        engine.handle(text_event("9999"))
        assert platform.last_text() == "Incorrect PIN. 2 attempts left."
        assert reload(ctx, user).pin_failures == 1

    def test_state_never_holds_the_clear_pin(self, ctx, engine, user):
        for text in ("change pin", "1234", "5678"):
            engine.handle(text_event(text))
        state = reload(ctx, user).conversation
        assert "5678" not in str(state.data)
        assert state.data["new_pin_hash"].startswith("pbkdf2_sha256$")
