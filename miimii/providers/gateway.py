"""
Provider Gateway
================
Single entry point handlers use for external money movement. Bank rails
go to the banking adapter, airtime/data/electricity to the VAS adapter.
"""

import logging
from decimal import Decimal
from typing import Any, Dict

from miimii.models import Category
from miimii.providers.base import NameEnquiry, ProviderAdapter, ProviderResult, VirtualAccountDetails

logger = logging.getLogger(__name__)

VAS_CATEGORIES = (Category.AIRTIME.value, Category.DATA.value, Category.BILL.value)


class ProviderGateway:

    def __init__(self, bank: ProviderAdapter, vas: ProviderAdapter):
        self.bank = bank
        self.vas = vas

    def name_enquiry(self, account_number: str, bank_code: str) -> NameEnquiry:
        return self.bank.name_enquiry(account_number, bank_code)

    def transfer(self, reference: str, account_number: str, bank_code: str, amount: Decimal,
                 narration: str = "", sender_name: str = "") -> ProviderResult:
        return self.bank.transfer(reference, account_number, bank_code, amount, narration, sender_name)

    def buy_airtime(self, reference: str, network: str, phone: str, amount: Decimal) -> ProviderResult:
        return self.vas.buy_airtime(reference, network, phone, amount)

    def buy_data(self, reference: str, network: str, phone: str, plan_id: int) -> ProviderResult:
        return self.vas.buy_data(reference, network, phone, plan_id)

    def pay_bill(self, reference: str, disco: str, meter_type: str, meter_number: str,
                 amount: Decimal) -> ProviderResult:
        return self.vas.pay_bill(reference, disco, meter_type, meter_number, amount)

    def create_virtual_account(self, reference: str, profile: Dict[str, Any]) -> VirtualAccountDetails:
        return self.bank.create_virtual_account(reference, profile)

    def get_status(self, reference: str, category: str = Category.TRANSFER.value) -> ProviderResult:
        adapter = self.vas if category in VAS_CATEGORIES else self.bank
        return adapter.get_status(reference)

    def get_balance(self, provider: str = "bank") -> Decimal:
        return (self.vas if provider == "vas" else self.bank).get_balance()

    def breakers(self) -> Dict[str, Dict[str, Any]]:
        return {
            adapter.name: adapter.breaker.snapshot()
            for adapter in (self.bank, self.vas)
        }
