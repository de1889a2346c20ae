"""
Command dispatcher
==================
Picks the handler for a turn from (user, intent, event). No I/O happens
here: the only precondition it applies is that wallet commands need a
finished onboarding, and it answers those with a setup prompt.
Onboarding, help and menu are always reachable.
"""

import re
import logging
from typing import Dict, Optional

from miimii.context import AppContext
from miimii.events import InboundEvent, MediaMessage, UnsupportedMessage, text_of
from miimii.handlers.account import AccountDetailsHandler, BalanceHandler
from miimii.handlers.airtime import AirtimeHandler
from miimii.handlers.base import CommandHandler, Outcome, Turn
from miimii.handlers.bills import BillsHandler
from miimii.handlers.data import DataHandler
from miimii.handlers.general import HelpHandler, MediaHandler, MenuHandler, UnclearHandler, UnsupportedHandler
from miimii.handlers.onboarding import OnboardingHandler
from miimii.handlers.pin_change import PinChangeHandler
from miimii.handlers.transfer import TransferHandler
from miimii.intents import IntentClassification
from miimii.models import ConversationState, Intent, User

logger = logging.getLogger(__name__)

_CHANGE_PIN = re.compile(r"^(change_pin|(change|reset|update) (my )?(transaction )?pin)$", re.IGNORECASE)


class SetupRequiredHandler(CommandHandler):
    requires_onboarding = False

    def __init__(self, onboarding: OnboardingHandler):
        self.onboarding = onboarding

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        return self.onboarding.require_setup(ctx, turn)


class Dispatcher:

    def __init__(self):
        self.onboarding = OnboardingHandler()
        self.transfer = TransferHandler()
        self.airtime = AirtimeHandler()
        self.bills = BillsHandler()
        self.data = DataHandler()
        self.pin_change = PinChangeHandler()
        self.unclear = UnclearHandler()
        self.media = MediaHandler()
        self.unsupported = UnsupportedHandler()
        self.setup_required = SetupRequiredHandler(self.onboarding)

        self.by_intent: Dict[Intent, CommandHandler] = {
            Intent.ONBOARDING: self.onboarding,
            Intent.BALANCE: BalanceHandler(),
            Intent.TRANSFER: self.transfer,
            Intent.AIRTIME: self.airtime,
            Intent.DATA: self.data,
            Intent.BILLS: self.bills,
            Intent.HELP: HelpHandler(),
            Intent.MENU: MenuHandler(),
            Intent.ACCOUNT_DETAILS: AccountDetailsHandler(),
            Intent.UNKNOWN: self.unclear,
        }
        self.resumable = [self.transfer, self.airtime, self.bills, self.data, self.pin_change]

    def dispatch(self, user: User, classification: IntentClassification, event: InboundEvent) -> CommandHandler:
        if isinstance(event, UnsupportedMessage):
            return self.unsupported
        if isinstance(event, MediaMessage) and not event.caption.strip():
            return self.media

        if _CHANGE_PIN.match(text_of(event)):
            handler = self.pin_change
        elif not classification.is_confident:
            return self.unclear
        else:
            handler = self.by_intent.get(classification.intent, self.unclear)

        if handler.requires_onboarding and not user.is_onboarded:
            return self.setup_required
        return handler

    def for_state(self, state: ConversationState) -> Optional[CommandHandler]:
        for handler in self.resumable:
            if handler.context_prefix and state.context.startswith(handler.context_prefix):
                return handler
        logger.warning(f"No handler resumes context {state.context!r}")
        return None
