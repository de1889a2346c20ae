import pytest

from miimii.errors import AuthenticationFailed, InvalidInput, PinLocked
from miimii.pin import check_pin, hash_pin, validate_new_pin


class TestHashing:

    def test_hash_format_and_check(self):
        stored = hash_pin("1234")
        algorithm, iterations, salt, digest = stored.split("$")
        assert algorithm == "pbkdf2_sha256"
        assert int(iterations) >= 100_000
        assert len(bytes.fromhex(salt)) == 16
        assert check_pin("1234", stored)
        assert not check_pin("4321", stored)

    def test_salt_is_random(self):
        assert hash_pin("1234") != hash_pin("1234")

    def test_garbage_hash_never_matches(self):
        assert not check_pin("1234", "plain-1234")
        assert not check_pin("1234", None)

    @pytest.mark.parametrize("stored", [
        "pbkdf2_sha256$100000$not-hex$abcd",
        "pbkdf2_sha256$many$00ff$abcd",
        "pbkdf2_sha256$0$00ff$abcd",
    ])
    def test_corrupted_hash_never_matches(self, stored):
        assert not check_pin("1234", stored)

    @pytest.mark.parametrize("pin", ["123", "12345", "abcd", "", "12 4"])
    def test_shape_enforced(self, pin):
        with pytest.raises(InvalidInput):
            validate_new_pin(pin)

    def test_confirmation_must_match(self):
        assert validate_new_pin(" 1234 ", "1234") == "1234"
        with pytest.raises(InvalidInput, match="don't match"):
            validate_new_pin("1234", "1243")


class TestVerify:

    def test_correct_pin(self, ctx, user):
        ctx.pins.verify(user, "1234")

    def test_wrong_pin_counts_down(self, ctx, user):
        with pytest.raises(AuthenticationFailed, match="2 attempts left"):
            ctx.pins.verify(user, "0000")
        with pytest.raises(AuthenticationFailed, match="1 attempt left"):
            ctx.pins.verify(user, "0000")

    def test_third_failure_locks_for_fifteen_minutes(self, ctx, user, clock):
        for _ in range(2):
            with pytest.raises(AuthenticationFailed):
                ctx.pins.verify(user, "0000")
        with pytest.raises(PinLocked) as locked:
            ctx.pins.verify(user, "0000")
        assert (locked.value.locked_until - clock()).total_seconds() == 15 * 60

        # Even the right PIN is refused while locked.
        clock.advance(minutes=14)
        with pytest.raises(PinLocked):
            ctx.pins.verify(user, "1234")

        clock.advance(minutes=1)
        ctx.pins.verify(user, "1234")
        assert ctx.users.get(user.id).pin_failures == 0

    def test_failures_expire_after_a_quiet_window(self, ctx, user, clock):
        for _ in range(2):
            with pytest.raises(AuthenticationFailed):
                ctx.pins.verify(user, "0000")
        clock.advance(minutes=15)
        with pytest.raises(AuthenticationFailed, match="2 attempts left"):
            ctx.pins.verify(user, "0000")

    def test_failures_within_the_window_still_lock(self, ctx, user, clock):
        for _ in range(2):
            with pytest.raises(AuthenticationFailed):
                ctx.pins.verify(user, "0000")
            clock.advance(minutes=10)
        with pytest.raises(PinLocked):
            ctx.pins.verify(user, "0000")

    def test_success_resets_counter(self, ctx, user):
        with pytest.raises(AuthenticationFailed):
            ctx.pins.verify(user, "0000")
        ctx.pins.verify(user, "1234")
        with pytest.raises(AuthenticationFailed, match="2 attempts left"):
            ctx.pins.verify(user, "0000")

    def test_non_digit_input_does_not_count(self, ctx, user):
        with pytest.raises(InvalidInput):
            ctx.pins.verify(user, "hello")
        assert ctx.users.get(user.id).pin_failures == 0

    def test_no_pin_set(self, ctx):
        fresh, _ = ctx.users.get_or_create("+2348011111111")
        with pytest.raises(AuthenticationFailed, match="No transaction PIN"):
            ctx.pins.verify(fresh, "1234")
