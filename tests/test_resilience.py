import json
from unittest.mock import MagicMock

import pytest
import requests

from miimii.errors import CircuitOpenError, ProviderOutcomeUnknown, ProviderRejected, ProviderUnavailable
from miimii.providers.bellbank import BellBankAdapter
from miimii.resilience import CircuitBreaker, CircuitState, TransientHTTPError, retry_with_backoff


class Ticker:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def response(status, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else {}
    resp.text = json.dumps(body or {})
    return resp


TOKEN = response(200, {"success": True, "token": "T"})
ENQUIRY = response(200, {"success": True, "data": {"accountName": "John Doe", "bankName": "BellBank"}})


# -----------------------------------------------------------------------
# Circuit breaker
# -----------------------------------------------------------------------

class TestCircuitBreaker:

    def failing(self):
        raise RuntimeError("down")

    def test_opens_after_threshold_and_fails_fast(self):
        breaker = CircuitBreaker("bank", failure_threshold=3, recovery_timeout=300, clock=Ticker())
        for _ in range(3):
            with pytest.raises(RuntimeError):
                breaker.call(self.failing)
        assert breaker.state == CircuitState.OPEN

        call = MagicMock()
        with pytest.raises(CircuitOpenError):
            breaker.call(call)
        call.assert_not_called()

    def test_single_trial_after_cooldown_then_closes(self):
        clock = Ticker()
        breaker = CircuitBreaker("bank", failure_threshold=3, recovery_timeout=300, clock=clock)
        for _ in range(3):
            with pytest.raises(RuntimeError):
                breaker.call(self.failing)

        clock.now += 300
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()
        # The trial is in flight; everyone else still fails fast.
        assert not breaker.allow_request()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.call(lambda: "ok") == "ok"

    def test_failed_trial_reopens(self):
        clock = Ticker()
        breaker = CircuitBreaker("bank", failure_threshold=3, recovery_timeout=300, clock=clock)
        for _ in range(3):
            with pytest.raises(RuntimeError):
                breaker.call(self.failing)
        clock.now += 301
        with pytest.raises(RuntimeError):
            breaker.call(self.failing)
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_count(self):
        breaker = CircuitBreaker("bank", failure_threshold=3, clock=Ticker())
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(self.failing)
        breaker.call(lambda: None)
        assert breaker.failure_count == 0
        assert breaker.snapshot() == {"state": "closed", "failures": 0}


# -----------------------------------------------------------------------
# Retry
# -----------------------------------------------------------------------

class TestRetry:

    def test_retries_transient_then_succeeds(self):
        sleeps = []
        attempts = iter([TransientHTTPError(503), requests.ConnectionError("reset"), "done"])

        @retry_with_backoff(max_retries=3, base_delay=1.0, sleep=sleeps.append)
        def flaky():
            outcome = next(attempts)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert flaky() == "done"
        assert len(sleeps) == 2
        # Jittered between half and all of base * 2^n.
        assert 0.5 <= sleeps[0] <= 1.0
        assert 1.0 <= sleeps[1] <= 2.0

    @pytest.mark.parametrize("error", [TransientHTTPError(400), TransientHTTPError(401), ValueError("bad")])
    def test_non_transient_not_retried(self, error):
        calls = []

        @retry_with_backoff(max_retries=3, sleep=lambda s: None)
        def broken():
            calls.append(1)
            raise error

        with pytest.raises(type(error)):
            broken()
        assert len(calls) == 1

    def test_gives_up_after_max_retries(self):
        calls = []

        @retry_with_backoff(max_retries=2, sleep=lambda s: None)
        def down():
            calls.append(1)
            raise TransientHTTPError(429)

        with pytest.raises(TransientHTTPError):
            down()
        assert len(calls) == 3


# -----------------------------------------------------------------------
# Provider adapter plumbing
# -----------------------------------------------------------------------

def adapter(*responses, **kwargs):
    session = MagicMock()
    session.request.side_effect = list(responses)
    bank = BellBankAdapter("http://bell.test", "key", "secret", session=session,
                           sleep=lambda s: None, clock=Ticker(), **kwargs)
    return bank, session


class TestProviderAdapter:

    def test_token_cached_between_calls(self):
        bank, session = adapter(TOKEN, ENQUIRY, ENQUIRY)
        assert bank.name_enquiry("0030826783", "000023").account_name == "John Doe"
        bank.name_enquiry("0030826783", "000023")
        assert session.request.call_count == 3

    def test_server_error_retried(self):
        bank, session = adapter(TOKEN, response(503), ENQUIRY)
        assert bank.name_enquiry("0030826783", "000023").account_name == "John Doe"
        assert session.request.call_count == 3

    def test_validation_error_not_retried(self):
        bank, session = adapter(TOKEN, response(400, {"message": "Invalid account"}))
        with pytest.raises(ProviderRejected, match="Invalid account"):
            bank.name_enquiry("0000000000", "000023")
        assert session.request.call_count == 2

    def test_transfer_timeout_is_outcome_unknown(self):
        bank, _ = adapter(TOKEN, requests.ReadTimeout(), requests.ReadTimeout(), requests.ReadTimeout())
        with pytest.raises(ProviderOutcomeUnknown):
            bank.transfer("TXN_1", "0030826783", "000023", 5000, "", "")

    def test_connect_failure_is_unavailable_not_unknown(self):
        bank, _ = adapter(TOKEN, requests.ConnectTimeout(), requests.ConnectTimeout(), requests.ConnectTimeout())
        with pytest.raises(ProviderUnavailable) as raised:
            bank.transfer("TXN_1", "0030826783", "000023", 5000, "", "")
        assert not isinstance(raised.value, ProviderOutcomeUnknown)

    def test_breaker_trips_and_skips_network(self):
        bank, session = adapter(TOKEN, response(500), response(500), response(500), max_retries=0)
        for _ in range(3):
            with pytest.raises(ProviderUnavailable):
                bank.name_enquiry("0030826783", "000023")
        calls = session.request.call_count
        with pytest.raises(CircuitOpenError):
            bank.name_enquiry("0030826783", "000023")
        assert session.request.call_count == calls
