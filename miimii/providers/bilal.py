"""
Bilal VAS adapter: airtime, data bundles and electricity tokens.
"""

import base64
import logging
from decimal import Decimal
from typing import Any, Dict, Tuple

from miimii.errors import InvalidInput, ProviderRejected
from miimii.phone import to_local
from miimii.providers.base import ProviderAdapter, ProviderResult

logger = logging.getLogger(__name__)

NETWORKS = {"MTN": 1, "AIRTEL": 2, "GLO": 3, "9MOBILE": 4}

DISCOS = {
    "IKEJA": 1,
    "EKO": 2,
    "KANO": 3,
    "PORT HARCOURT": 4,
    "JOS": 5,
    "IBADAN": 6,
    "ENUGU": 7,
    "KADUNA": 8,
    "ABUJA": 9,
    "BENIN": 10,
}

METER_TYPES = ("prepaid", "postpaid")
AIRTIME_MIN = Decimal("50")
AIRTIME_MAX = Decimal("50000")
TOKEN_LIFETIME = 3600


def network_id(network: str) -> int:
    try:
        return NETWORKS[network.strip().upper()]
    except (KeyError, AttributeError):
        raise InvalidInput(f"Unsupported network: {network}. Choose MTN, Airtel, Glo or 9mobile.")


def disco_id(disco: str) -> int:
    try:
        return DISCOS[disco.strip().upper()]
    except (KeyError, AttributeError):
        raise InvalidInput(f"Unsupported electricity company: {disco}.")


class BilalAdapter(ProviderAdapter):
    name = "bilal"

    def __init__(self, base_url: str, username: str, password: str, **kwargs):
        super().__init__(base_url, **kwargs)
        self.username = username
        self.password = password

    def authenticate(self) -> Tuple[str, float]:
        credentials = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        body = self._request(
            "POST", "/user/", "authenticate", authenticated=False,
            headers={"Authorization": f"Basic {credentials}"}, json={},
        )
        if body.get("status") != "success" or not body.get("AccessToken"):
            raise ProviderRejected(body.get("message") or "Bilal authentication failed")
        return body["AccessToken"], TOKEN_LIFETIME

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.get_token()}"}

    def _result(self, body: Dict[str, Any], reference: str, operation: str) -> ProviderResult:
        status = str(body.get("status", "")).lower()
        if status in ("fail", "failed", "error"):
            raise ProviderRejected(body.get("message") or f"{operation} failed", operation=operation)
        return ProviderResult(
            status="completed" if status == "success" else "pending",
            provider_reference=body.get("request-id") or reference,
            message=body.get("message", ""),
            token=body.get("token") or body.get("purchased_code"),
            data=body,
        )

    def buy_airtime(self, reference: str, network: str, phone: str, amount: Decimal) -> ProviderResult:
        if not AIRTIME_MIN <= amount <= AIRTIME_MAX:
            raise InvalidInput(f"Airtime amount must be between ₦{AIRTIME_MIN:,.0f} and ₦{AIRTIME_MAX:,.0f}.")
        payload = {
            "network": network_id(network),
            "phone": to_local(phone),
            "plan_type": "VTU",
            "bypass": False,
            "amount": int(amount),
            "request-id": reference,
        }
        body = self._request("POST", "/topup/", "buy_airtime", mutating=True, json=payload)
        return self._result(body, reference, "buy_airtime")

    def buy_data(self, reference: str, network: str, phone: str, plan_id: int) -> ProviderResult:
        payload = {
            "network": network_id(network),
            "phone": to_local(phone),
            "data_plan": plan_id,
            "bypass": False,
            "request-id": reference,
        }
        body = self._request("POST", "/data/", "buy_data", mutating=True, json=payload)
        return self._result(body, reference, "buy_data")

    def pay_bill(self, reference: str, disco: str, meter_type: str, meter_number: str,
                 amount: Decimal) -> ProviderResult:
        if meter_type.lower() not in METER_TYPES:
            raise InvalidInput("Meter type must be prepaid or postpaid.")
        payload = {
            "disco": disco_id(disco),
            "meter_type": meter_type.lower(),
            "meter_number": meter_number,
            "amount": int(amount),
            "bypass": False,
            "request-id": reference,
        }
        body = self._request("POST", "/bill/", "pay_bill", mutating=True, json=payload)
        return self._result(body, reference, "pay_bill")

    def get_balance(self) -> Decimal:
        # The /user/ login response is the only place Bilal reports the wallet balance.
        credentials = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        body = self._request(
            "POST", "/user/", "get_balance", authenticated=False,
            headers={"Authorization": f"Basic {credentials}"}, json={},
        )
        return Decimal(str(body.get("balance") or "0"))

    def get_status(self, reference: str) -> ProviderResult:
        # Bilal settles asynchronously through its callback; there is no lookup endpoint.
        logger.debug(f"bilal: no status lookup for {reference}, waiting for callback")
        return ProviderResult(status="pending", provider_reference=reference)

    def parse_callback(self, body: Dict[str, Any]) -> Tuple[str, ProviderResult]:
        """(reference, result) from a Bilal webhook callback."""
        reference = body.get("request-id")
        if not reference:
            raise InvalidInput("Callback without request-id")
        status = str(body.get("status", "")).lower()
        mapped = "completed" if status == "success" else "failed" if status in ("fail", "failed") else "pending"
        return reference, ProviderResult(
            status=mapped, provider_reference=reference,
            message=str(body.get("response") or body.get("message") or ""), data=body,
        )
