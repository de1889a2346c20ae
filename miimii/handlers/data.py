"""
Data bundles
============
Data is bought through the data purchase Flow: network, phone, plan and
PIN are collected on screens, and the purchase runs when the Flow
completes. While the Flow is open the conversation sits in
DataPurchase.InFlow.
"""

import logging

from miimii.context import AppContext
from miimii.errors import InvalidInput, ProviderUnavailable
from miimii.fees import data_fee
from miimii.handlers.base import CommandHandler, Continue, Done, Outcome, Turn, make_reference
from miimii.intents import IntentClassification
from miimii.messages import FlowInvitation
from miimii.models import Category, ConversationState, FlowType, Intent, format_naira
from miimii.phone import normalize, to_local

logger = logging.getLogger(__name__)

IN_FLOW = "DataPurchase.InFlow"
DATA_FIRST_SCREEN = "NETWORK_SELECTION_SCREEN"


class DataHandler(CommandHandler):
    intent = Intent.DATA
    moves_money = True
    context_prefix = "DataPurchase."

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        flow_id = ctx.settings.flow_id(FlowType.DATA_PURCHASE.value)
        if not flow_id:
            logger.error("Data purchase requested but FLOW_DATA_PURCHASE_ID is not configured")
            self.fail(ctx, turn, ProviderUnavailable("data purchase flow not configured"))
            return Done()

        token = ctx.flow_tokens.mint(turn.user.id, FlowType.DATA_PURCHASE.value, turn.phone, DATA_FIRST_SCREEN)
        ctx.notifier.send(turn.phone, FlowInvitation(
            flow_id=flow_id,
            flow_token=token,
            body="📶 Choose a network, enter the phone number and pick a plan.",
            cta="Buy Data",
            initial_screen=DATA_FIRST_SCREEN,
            header="Buy Data",
        ))
        return Continue(ConversationState.start(Intent.DATA.value, "flow", IN_FLOW, {"flow_token": token},
                                                now=turn.now))

    def resume(self, ctx: AppContext, turn: Turn, state: ConversationState) -> Outcome:
        self.say(ctx, turn, "Please finish the data purchase form above, or reply CANCEL to stop.")
        return Continue(state.advance(turn.now))

    def purchase(self, ctx: AppContext, turn: Turn, network: str, phone: str, plan_id) -> Outcome:
        """Buy ``plan_id`` for ``phone``; the PIN was checked on the Flow's PIN screen."""
        plan = ctx.plans.get(plan_id)
        if plan is None or not plan.active or plan.network != (network or plan.network).upper():
            self.fail(ctx, turn, InvalidInput("That data plan is no longer available. Please try again."))
            return Done()
        try:
            local = to_local(normalize(phone or turn.phone, ctx.settings.default_country_code))
        except InvalidInput as e:
            self.fail(ctx, turn, e)
            return Done()

        price = plan.selling_price
        fee = data_fee(price, ctx.settings.data_service_fee)
        reference = make_reference("DATA", turn.user.id, turn.now)
        self.execute_vas(
            ctx, turn, Category.DATA, reference, price, fee,
            description=f"{plan.title} data for {local}",
            metadata={"network": plan.network, "phone": local, "plan_id": plan.id, "plan": plan.title},
            call=lambda: ctx.gateway.buy_data(reference, plan.network, local, plan.api_plan_id),
            title="Data Receipt",
            lines=[("Plan", f"{plan.title} ({plan.validity})"), ("Phone", local),
                   ("Price", format_naira(price))],
        )
        return Done()
