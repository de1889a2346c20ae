"""
BellBank (BaaS) adapter: tokens, virtual accounts, name enquiry, transfers.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Tuple

from miimii.errors import ProviderRejected
from miimii.phone import mask, to_local
from miimii.providers.base import (
    NameEnquiry, ProviderAdapter, ProviderResult, VirtualAccountDetails,
)

logger = logging.getLogger(__name__)

BELLBANK_CODE = "000023"
BELLBANK_NAME = "BellMonie"
TOKEN_VALIDITY_MINUTES = 2880

_STATUS_MAP = {
    "successful": "completed",
    "success": "completed",
    "completed": "completed",
    "failed": "failed",
    "reversed": "failed",
    "declined": "failed",
}


class BellBankAdapter(ProviderAdapter):
    name = "bellbank"

    def __init__(self, base_url: str, consumer_key: str, consumer_secret: str, **kwargs):
        super().__init__(base_url, **kwargs)
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret

    def authenticate(self) -> Tuple[str, float]:
        body = self._request(
            "POST", "/v1/generate-token", "authenticate", authenticated=False,
            headers={
                "consumerKey": self.consumer_key,
                "consumerSecret": self.consumer_secret,
                "validityTime": str(TOKEN_VALIDITY_MINUTES),
            },
            json={},
        )
        if not body.get("success") or not body.get("token"):
            raise ProviderRejected(body.get("message") or "Token generation failed")
        return body["token"], TOKEN_VALIDITY_MINUTES * 60

    def _data(self, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        if not body.get("success"):
            raise ProviderRejected(body.get("message") or f"{operation} failed", operation=operation)
        return body.get("data") or {}

    def create_virtual_account(self, reference: str, profile: Dict[str, Any]) -> VirtualAccountDetails:
        payload = {
            "firstname": profile["first_name"],
            "lastname": profile["last_name"],
            "middlename": profile.get("middle_name", ""),
            "phoneNumber": to_local(profile["phone"]),
            "address": profile.get("address", ""),
            "bvn": profile["bvn"],
            "gender": profile.get("gender", ""),
            # BellBank expects 1993/12/29
            "dateOfBirth": profile.get("date_of_birth", "").replace("-", "/"),
            "metadata": {"reference": reference},
        }
        data = self._data(
            self._request("POST", "/v1/account/clients/individual", "create_virtual_account",
                          mutating=True, json=payload),
            "create_virtual_account",
        )
        logger.info(f"BellBank virtual account created for {mask(profile['phone'])}")
        return VirtualAccountDetails(
            account_number=data["accountNumber"],
            account_name=data.get("accountName", ""),
            bank_name=data.get("bankName") or BELLBANK_NAME,
            bank_code=BELLBANK_CODE,
        )

    def list_banks(self) -> list:
        return self._data(self._request("GET", "/v1/transfer/banks", "list_banks"), "list_banks")

    def name_enquiry(self, account_number: str, bank_code: str) -> NameEnquiry:
        data = self._data(
            self._request("POST", "/v1/transfer/name-enquiry", "name_enquiry",
                          json={"bankCode": bank_code, "accountNumber": account_number}),
            "name_enquiry",
        )
        return NameEnquiry(
            account_number=account_number,
            account_name=data.get("accountName", ""),
            bank_code=bank_code,
            bank_name=data.get("bankName", ""),
        )

    def transfer(self, reference: str, account_number: str, bank_code: str, amount: Decimal,
                 narration: str, sender_name: str) -> ProviderResult:
        payload = {
            "beneficiaryBankCode": bank_code,
            "beneficiaryAccountNumber": account_number,
            "narration": narration or "MiiMii transfer",
            "amount": float(amount),
            "reference": reference,
            "senderName": sender_name or "MiiMii User",
        }
        data = self._data(
            self._request("POST", "/v1/transfer", "transfer", mutating=True, json=payload),
            "transfer",
        )
        logger.info(f"BellBank transfer {reference} accepted with status {data.get('status')}")
        return ProviderResult(
            status=_STATUS_MAP.get(str(data.get("status", "")).lower(), "pending"),
            provider_reference=data.get("reference") or data.get("sessionId"),
            message=data.get("message", ""),
            data=data,
        )

    def get_status(self, reference: str) -> ProviderResult:
        data = self._data(
            self._request("GET", f"/v1/transactions/reference/{reference}", "get_status"),
            "get_status",
        )
        return ProviderResult(
            status=_STATUS_MAP.get(str(data.get("status", "")).lower(), "pending"),
            provider_reference=data.get("reference"),
            message=data.get("description", ""),
            data=data,
        )

    def get_balance(self) -> Decimal:
        data = self._data(self._request("GET", "/v1/account/info/", "get_balance"), "get_balance")
        return Decimal(str(data.get("balance", "0")))
