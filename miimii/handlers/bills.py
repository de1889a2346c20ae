"""
Electricity bills
=================
Collects disco, meter type, meter number and amount, confirms with the
fee, then pays through the VAS provider. Prepaid tokens returned by the
provider go on the receipt.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from miimii.context import AppContext
from miimii.fees import BILL_MIN, bill_fee
from miimii.handlers.base import (
    CONFIRM, CommandHandler, Continue, Done, Outcome, Turn, amount_rows, confirm_body, make_reference,
)
from miimii.intents import IntentClassification, extract_entities
from miimii.models import Category, ConversationState, Intent, format_naira, money
from miimii.providers.bilal import DISCOS, METER_TYPES

logger = logging.getLogger(__name__)

DETAILS = "Bill.AwaitingDetails"
CONFIRMING = "Bill.AwaitingConfirm"
PIN = "Bill.AwaitingPin"
REQUIRED = ("disco", "meter_type", "meter_number", "amount")


class BillsHandler(CommandHandler):
    intent = Intent.BILLS
    moves_money = True
    context_prefix = "Bill."

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        return self._collect(ctx, turn, _details(classification.entities), None)

    def resume(self, ctx: AppContext, turn: Turn, state: ConversationState) -> Outcome:
        if state.context == DETAILS:
            details = dict(state.data)
            details.update(_details(extract_entities(turn.text)))
            return self._collect(ctx, turn, details, state)
        if state.context == CONFIRMING:
            if CONFIRM.match(turn.text):
                return self.ask_pin(ctx, turn, state, PIN)
            self.say(ctx, turn, "Reply YES to pay the bill or NO to cancel.")
            return Continue(state.advance(turn.now))
        if state.context == PIN:
            outcome = self.check_pin(ctx, turn, state)
            if outcome is not None:
                return outcome
            return self._execute(ctx, turn, state.data)
        return Done()

    def expired_notice(self, state: ConversationState) -> Optional[str]:
        if state.context in (CONFIRMING, PIN):
            return "⌛ Your bill payment request expired and nothing was charged."
        return None

    def _collect(self, ctx: AppContext, turn: Turn, details: Dict[str, Any],
                 state: Optional[ConversationState]) -> Outcome:
        missing = [key for key in REQUIRED if not details.get(key)]
        if missing:
            self.say(ctx, turn, _details_prompt(missing))
            return self._awaiting(turn, details, state)

        amount = money(details["amount"])
        if amount < BILL_MIN:
            self.say(ctx, turn, f"The minimum electricity payment is {format_naira(BILL_MIN)}. How much?")
            details.pop("amount")
            return self._awaiting(turn, details, state)

        fee = bill_fee(amount)
        data = {
            "amount": str(amount),
            "fee": str(fee),
            "disco": details["disco"],
            "meter_type": details["meter_type"],
            "meter_number": details["meter_number"],
            "reference": make_reference("BILL", turn.user.id, turn.now),
        }
        self.ask_confirmation(ctx, turn, confirm_body("Confirm electricity payment", [
            ("Disco", data["disco"].title()),
            ("Meter", f"{data['meter_number']} ({data['meter_type']})"),
        ] + amount_rows(amount, fee)))
        return Continue(ConversationState.start(Intent.BILLS.value, "confirmation", CONFIRMING, data,
                                                now=turn.now))

    def _awaiting(self, turn: Turn, details: Dict[str, Any], state: Optional[ConversationState]) -> Continue:
        data = {key: str(value) for key, value in details.items() if value}
        if state is None:
            return Continue(ConversationState.start(Intent.BILLS.value, "bill_details", DETAILS, data,
                                                    now=turn.now))
        return Continue(state.advance(turn.now, data=data, context=DETAILS, awaiting_input="bill_details"))

    def _execute(self, ctx: AppContext, turn: Turn, data: Dict[str, Any]) -> Outcome:
        amount, fee, reference = Decimal(data["amount"]), Decimal(data["fee"]), data["reference"]
        self.execute_vas(
            ctx, turn, Category.BILL, reference, amount, fee,
            description=f"{format_naira(amount)} {data['disco'].title()} electricity",
            metadata={key: data[key] for key in ("disco", "meter_type", "meter_number")},
            call=lambda: ctx.gateway.pay_bill(reference, data["disco"], data["meter_type"],
                                              data["meter_number"], amount),
            title="Electricity Receipt",
            lines=[("Disco", data["disco"].title()), ("Meter", data["meter_number"]),
                   ("Meter type", data["meter_type"].title())],
        )
        return Done()


def _details(entities: Dict[str, Any]) -> Dict[str, Any]:
    details = {key: entities[key] for key in REQUIRED if entities.get(key)}
    if details.get("disco") and details["disco"].upper() not in DISCOS:
        details.pop("disco")
    if details.get("meter_type") and details["meter_type"] not in METER_TYPES:
        details.pop("meter_type")
    return details


def _details_prompt(missing) -> str:
    names = {
        "disco": "the electricity company (e.g. Ikeja, Eko, Abuja)",
        "meter_type": "prepaid or postpaid",
        "meter_number": "the meter number",
        "amount": "the amount",
    }
    return "\n".join([
        "⚡ To pay for electricity I need:",
        *[f"• {names[key]}" for key in missing],
        "Example: *Pay 5000 Ikeja prepaid 45012345678*",
    ])
