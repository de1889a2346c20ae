"""
Change transaction PIN: current PIN, new PIN, confirmation.

The new PIN is hashed as soon as it arrives; conversation state only
ever holds the hash.
"""

import logging

from miimii.context import AppContext
from miimii.handlers.base import CommandHandler, Continue, Done, Outcome, Turn
from miimii.intents import IntentClassification
from miimii.models import ConversationState
from miimii.pin import check_pin, hash_pin, is_pin_shaped

logger = logging.getLogger(__name__)

AWAITING = "Maintenance.AwaitingPinForAction"
CURRENT, NEW, CONFIRM_NEW = 0, 1, 2


class PinChangeHandler(CommandHandler):
    intent = "pin_change"
    context_prefix = "Maintenance."

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        state = ConversationState.start("pin_change", "pin", AWAITING, {"action": "change_pin"},
                                        step=CURRENT, now=turn.now)
        return self.ask_pin(ctx, turn, state, AWAITING, prompt="🔐 Enter your *current* 4-digit PIN.")

    def resume(self, ctx: AppContext, turn: Turn, state: ConversationState) -> Outcome:
        if state.step == CURRENT:
            outcome = self.check_pin(ctx, turn, state)
            if outcome is not None:
                return outcome
            self.say(ctx, turn, "Now enter your *new* 4-digit PIN.")
            return Continue(state.advance(turn.now, awaiting_input="new_pin", step=NEW))

        if state.step == NEW:
            if not is_pin_shaped(turn.text):
                self.say(ctx, turn, "Your PIN must be exactly 4 digits. Enter your new PIN.")
                return Continue(state.advance(turn.now))
            data = dict(state.data, new_pin_hash=hash_pin(turn.text.strip()))
            self.say(ctx, turn, "Enter the new PIN again to confirm.")
            return Continue(state.advance(turn.now, step=CONFIRM_NEW, data=data))

        if state.step == CONFIRM_NEW:
            new_hash = state.data.get("new_pin_hash", "")
            if not check_pin(turn.text.strip(), new_hash):
                data = {key: value for key, value in state.data.items() if key != "new_pin_hash"}
                self.say(ctx, turn, "The two PINs don't match. Enter your new 4-digit PIN again.")
                return Continue(state.advance(turn.now, step=NEW, data=data))
            ctx.pins.set_pin_hash(turn.user, new_hash)
            ctx.activity.log(turn.user.id, "pin_changed")
            self.say(ctx, turn, "✅ Your transaction PIN has been changed.")
            return Done()

        return Done()
