"""
Airtime top-up
==============
"Buy 1000 airtime for 08031234567 mtn" goes straight to confirmation;
missing pieces are asked for first. Confirmed purchases hold the amount,
call the VAS provider and capture or release the hold.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from miimii.context import AppContext
from miimii.errors import InvalidPhoneNumber
from miimii.fees import airtime_fee
from miimii.handlers.base import (
    CONFIRM, CommandHandler, Continue, Done, Outcome, Turn, amount_rows, confirm_body, make_reference,
)
from miimii.intents import IntentClassification, extract_entities
from miimii.models import Category, ConversationState, Intent, format_naira, money
from miimii.phone import normalize, to_local
from miimii.providers.bilal import AIRTIME_MAX, AIRTIME_MIN, NETWORKS

logger = logging.getLogger(__name__)

DETAILS = "Airtime.AwaitingDetails"
CONFIRMING = "Airtime.AwaitingConfirm"
PIN = "Airtime.AwaitingPin"


class AirtimeHandler(CommandHandler):
    intent = Intent.AIRTIME
    moves_money = True
    context_prefix = "Airtime."

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
            self.say(ctx, turn, "Reply YES to buy the airtime or NO to cancel.")
            return Continue(state.advance(turn.now))
        if state.context == PIN:
            outcome = self.check_pin(ctx, turn, state)
            if outcome is not None:
                return outcome
            return self._execute(ctx, turn, state.data)
        return Done()

    def expired_notice(self, state: ConversationState) -> Optional[str]:
        if state.context in (CONFIRMING, PIN):
            return "⌛ Your airtime request expired and nothing was charged."
        return None

    def _collect(self, ctx: AppContext, turn: Turn, details: Dict[str, Any],
                 state: Optional[ConversationState]) -> Outcome:
        if not details.get("amount") or not details.get("network"):
            self.say(ctx, turn, "📱 Which network and how much?\n"
                                "Example: *1000 MTN* or *500 Airtel for 08031234567*")
            return self._awaiting(turn, details, state)

        amount = money(details["amount"])
        if amount < AIRTIME_MIN or amount > AIRTIME_MAX:
            self.say(ctx, turn, f"Airtime must be between {format_naira(AIRTIME_MIN)} and "
                                f"{format_naira(AIRTIME_MAX)}. How much would you like?")
            details.pop("amount")
            return self._awaiting(turn, details, state)

        phone = details.get("phone") or turn.user.phone
        try:
            local = to_local(normalize(phone, ctx.settings.default_country_code))
        except InvalidPhoneNumber:
            local = ""
        if len(local) != 11 or not local.startswith("0"):
            self.say(ctx, turn, "Please send an 11-digit Nigerian mobile number, e.g. 08031234567.")
            details.pop("phone", None)
            return self._awaiting(turn, details, state)

        fee = airtime_fee(amount)
        data = {
            "amount": str(amount),
            "fee": str(fee),
            "network": details["network"],
            "phone": local,
            "reference": make_reference("AIRTIME", turn.user.id, turn.now),
        }
        self.ask_confirmation(ctx, turn, confirm_body("Confirm airtime", [
            ("Network", data["network"]),
            ("Phone", local),
        ] + amount_rows(amount, fee)))
        return Continue(ConversationState.start(Intent.AIRTIME.value, "confirmation", CONFIRMING, data,
                                                now=turn.now))

    def _awaiting(self, turn: Turn, details: Dict[str, Any], state: Optional[ConversationState]) -> Continue:
        data = {key: str(value) for key, value in details.items() if value}
        if state is None:
            return Continue(ConversationState.start(Intent.AIRTIME.value, "airtime_details", DETAILS, data,
                                                    now=turn.now))
        return Continue(state.advance(turn.now, data=data, context=DETAILS, awaiting_input="airtime_details"))

    def _execute(self, ctx: AppContext, turn: Turn, data: Dict[str, Any]) -> Outcome:
        amount, fee, reference = Decimal(data["amount"]), Decimal(data["fee"]), data["reference"]
        self.execute_vas(
            ctx, turn, Category.AIRTIME, reference, amount, fee,
            description=f"{format_naira(amount)} {data['network']} airtime for {data['phone']}",
            metadata={"network": data["network"], "phone": data["phone"]},
            call=lambda: ctx.gateway.buy_airtime(reference, data["network"], data["phone"], amount),
            title="Airtime Receipt",
            lines=[("Network", data["network"]), ("Phone", data["phone"])],
        )
        return Done()


def _details(entities: Dict[str, Any]) -> Dict[str, Any]:
    details = {key: entities[key] for key in ("amount", "phone", "network") if entities.get(key)}
    if details.get("network") and details["network"].upper() not in NETWORKS:
        details.pop("network")
    return details
