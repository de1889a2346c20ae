"""
Provider adapter base
=====================
Common plumbing for every external provider (bank rails, VAS):

- bearer token cache, refreshed 60 s before expiry under a lock
- requests.Session with per-operation timeouts (180 s for long-tail calls)
- retry with jittered backoff for network errors, 5xx, 408 and 429
- one circuit breaker per provider
- translation of HTTP outcomes into the error taxonomy
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from miimii.errors import (
    CircuitOpenError, ProviderOutcomeUnknown, ProviderRejected, ProviderUnavailable,
)
from miimii.resilience import CircuitBreaker, TransientHTTPError, is_retryable, retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
LONG_TIMEOUT = 180
TOKEN_REFRESH_MARGIN = 60
LONG_OPERATIONS = frozenset({"transfer", "create_virtual_account"})
DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
# Every attempt of a long operation timing out, plus every backoff sleep at full length.
LONGEST_CALL_SECONDS = LONG_TIMEOUT * (DEFAULT_MAX_RETRIES + 1) + DEFAULT_BASE_DELAY * (2 ** DEFAULT_MAX_RETRIES - 1)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class NameEnquiry:
    account_number: str
    account_name: str
    bank_code: str
    bank_name: str = ""


@dataclass
class ProviderResult:
    status: str  # completed | pending | failed
    provider_reference: Optional[str] = None
    message: str = ""
    token: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == "completed"


@dataclass
class VirtualAccountDetails:
    account_number: str
    account_name: str
    bank_name: str
    bank_code: str = ""


class ProviderAuthError(ProviderUnavailable):
    """Our credentials were refused; not retried."""
    code = "E403"


def _counts_against_breaker(error: BaseException) -> bool:
    return not isinstance(error, ProviderRejected)


# ============================================================================
# ADAPTER
# ============================================================================

class ProviderAdapter:
    name = "provider"

    def __init__(
        self,
        base_url: str,
        session: requests.Session = None,
        breaker: CircuitBreaker = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.breaker = breaker or CircuitBreaker(self.name)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Token cache
    # ------------------------------------------------------------------

    def get_token(self) -> str:
        with self._token_lock:
            if self._token and self.clock() < self._token_expires_at - TOKEN_REFRESH_MARGIN:
                return self._token
            token, lifetime = self.authenticate()
            self._token = token
            self._token_expires_at = self.clock() + lifetime
            logger.info(f"{self.name}: new access token valid for {int(lifetime)}s")
            return token

    def invalidate_token(self):
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.get_token()}"}

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, operation: str, mutating: bool = False,
                 authenticated: bool = True, headers: Dict[str, str] = None, **kwargs) -> Dict[str, Any]:
        timeout = LONG_TIMEOUT if operation in LONG_OPERATIONS else DEFAULT_TIMEOUT
        url = f"{self.base_url}{path}"
        reached = {"maybe": False}

        @retry_with_backoff(max_retries=self.max_retries, base_delay=self.base_delay, sleep=self.sleep)
        def attempt():
            request_headers = {"Content-Type": "application/json"}
            if authenticated:
                request_headers.update(self.auth_headers())
            request_headers.update(headers or {})
            try:
                response = self.session.request(method, url, headers=request_headers, timeout=timeout, **kwargs)
            except requests.ConnectTimeout:
                raise
            except (requests.Timeout, requests.ConnectionError):
                reached["maybe"] = True
                raise
            return self._check_response(response, operation, reached)

        try:
            return self.breaker.call(attempt, is_failure=_counts_against_breaker)
        except (CircuitOpenError, ProviderRejected, ProviderUnavailable):
            raise
        except (requests.RequestException, TransientHTTPError) as e:
            logger.error(f"{self.name}.{operation} failed: {e}")
            if mutating and reached["maybe"]:
                raise ProviderOutcomeUnknown(f"{self.name} {operation} outcome unknown: {e}")
            raise ProviderUnavailable(f"{self.name} {operation} unavailable: {e}")

    def _check_response(self, response: requests.Response, operation: str,
                        reached: Dict[str, bool]) -> Dict[str, Any]:
        status = response.status_code
        if status in (401, 403):
            self.invalidate_token()
            raise ProviderAuthError(f"{self.name} refused credentials on {operation} (HTTP {status})")
        if is_retryable(TransientHTTPError(status)):
            if status >= 500 or status == 408:
                reached["maybe"] = True
            raise TransientHTTPError(status, response.text[:500])
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text[:500]}
        if status >= 400:
            raise ProviderRejected(_message(body) or f"HTTP {status}", status=status, operation=operation)
        return body if isinstance(body, dict) else {"data": body}

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def authenticate(self) -> Tuple[str, float]:
        """Return (token, lifetime in seconds)."""
        raise NotImplementedError

    def name_enquiry(self, account_number: str, bank_code: str) -> NameEnquiry:
        raise NotImplementedError

    def transfer(self, reference: str, account_number: str, bank_code: str, amount: Decimal,
                 narration: str, sender_name: str) -> ProviderResult:
        raise NotImplementedError

    def buy_airtime(self, reference: str, network: str, phone: str, amount: Decimal) -> ProviderResult:
        raise NotImplementedError

    def buy_data(self, reference: str, network: str, phone: str, plan_id: int) -> ProviderResult:
        raise NotImplementedError

    def pay_bill(self, reference: str, disco: str, meter_type: str, meter_number: str,
                 amount: Decimal) -> ProviderResult:
        raise NotImplementedError

    def get_balance(self) -> Decimal:
        raise NotImplementedError

    def get_status(self, reference: str) -> ProviderResult:
        raise NotImplementedError

    def create_virtual_account(self, reference: str, profile: Dict[str, Any]) -> VirtualAccountDetails:
        raise NotImplementedError


def _message(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body.get("detail") or "")
    return ""
