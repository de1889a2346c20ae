"""
Command handler base
====================
A handler owns one intent. ``start`` runs when a classified message
opens the intent, ``resume`` when a later message arrives while the
user's conversation state belongs to it. Both return an Outcome telling
the engine what to do with the conversation state:

- Done: the interaction finished (successfully or not); clear the state
- Continue(state): keep waiting for input with the given state
- Cancel: the user backed out or was locked out; clear the state
"""

import re
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from miimii.context import AppContext
from miimii.errors import (
    AuthenticationFailed, InvalidInput, MiiMiiError, PinLocked,
    ProviderOutcomeUnknown, ProviderRejected, ProviderUnavailable, describe,
)
from miimii.events import InboundEvent
from miimii.intents import IntentClassification
from miimii.messages import Button, ButtonPrompt
from miimii.models import Category, ConversationState, Intent, TransactionStatus, User, format_naira
from miimii.providers.base import ProviderResult
from miimii.receipts import Receipt

logger = logging.getLogger(__name__)

CONFIRM = re.compile(r"^(yes|y|yeah|yep|confirm|ok|okay|proceed|sure)$", re.IGNORECASE)
CONFIRM_BUTTONS = [Button("confirm", "✅ Confirm"), Button("cancel", "❌ Cancel")]


@dataclass
class Turn:
    """One inbound user event being handled."""
    user: User
    event: InboundEvent
    text: str
    correlation_id: str
    now: datetime

    @property
    def phone(self) -> str:
        return self.user.phone


@dataclass
class Done:
    pass


@dataclass
class Continue:
    state: ConversationState


@dataclass
class Cancel:
    pass


Outcome = Union[Done, Continue, Cancel]


def make_reference(prefix: str, user_id: str, now: datetime) -> str:
    """``<PREFIX>_<epoch ms>_<user suffix>``, unique per user per millisecond."""
    return f"{prefix}_{int(now.timestamp() * 1000)}_{user_id.replace('-', '')[-8:]}"


class CommandHandler:
    intent = Intent.UNKNOWN
    # Handlers that need a wallet are refused until onboarding is complete.
    requires_onboarding = True
    # Handlers that move money may require an active login session.
    moves_money = False
    # Conversation contexts this handler resumes, e.g. "Transfer."
    context_prefix: Optional[str] = None

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        raise NotImplementedError

    def resume(self, ctx: AppContext, turn: Turn, state: ConversationState) -> Outcome:
        return Done()

    def expired_notice(self, state: ConversationState) -> Optional[str]:
        """Text sent when the user comes back after this handler's state expired."""
        return None

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def say(self, ctx: AppContext, turn: Turn, text: str):
        ctx.notifier.text(turn.phone, text)

    def fail(self, ctx: AppContext, turn: Turn, error: BaseException):
        """Report an error to the user; internal details only reach the log."""
        if isinstance(error, MiiMiiError) and error.verbatim:
            logger.info(f"[{turn.correlation_id}] {type(error).__name__}: {error.message}")
        else:
            logger.error(f"[{turn.correlation_id}] {type(error).__name__}: {error}",
                         exc_info=not isinstance(error, MiiMiiError))
        self.say(ctx, turn, describe(error, turn.correlation_id))

    def ask_confirmation(self, ctx: AppContext, turn: Turn, body: str):
        ctx.notifier.send(turn.phone, ButtonPrompt(body=body, buttons=CONFIRM_BUTTONS))

    def ask_pin(self, ctx: AppContext, turn: Turn, state: ConversationState, context: str,
                prompt: str = "🔐 Please enter your 4-digit transaction PIN.") -> Outcome:
        locked = ctx.pins.locked_until(turn.user)
        if locked:
            self.fail(ctx, turn, PinLocked(locked))
            return Cancel()
        if not turn.user.pin_hash:
            self.say(ctx, turn, "You haven't set a transaction PIN yet. Please complete your setup first.")
            return Cancel()
        self.say(ctx, turn, prompt)
        return Continue(state.advance(turn.now, awaiting_input="pin", context=context))

    def check_pin(self, ctx: AppContext, turn: Turn, state: ConversationState) -> Optional[Outcome]:
        """None when the PIN is right; otherwise the outcome to return."""
        try:
            ctx.pins.verify(turn.user, turn.text)
        except PinLocked as e:
            ctx.activity.log(turn.user.id, "pin_locked", context=state.context)
            self.fail(ctx, turn, e)
            return Cancel()
        except InvalidInput as e:
            self.say(ctx, turn, f"{e.message} Reply CANCEL to stop.")
            return Continue(state.advance(turn.now))
        except AuthenticationFailed as e:
            ctx.activity.log(turn.user.id, "pin_failed", context=state.context)
            self.say(ctx, turn, e.message)
            return Continue(state.advance(turn.now))
        return None

    def execute_vas(self, ctx: AppContext, turn: Turn, category: Category, reference: str,
                    amount: Decimal, fee: Decimal, description: str, metadata: Dict[str, Any],
                    call: Callable[[], ProviderResult], title: str,
                    lines: list) -> Optional[ProviderResult]:
        """Hold, call the VAS provider, then capture or release the hold."""
        held = ctx.wallet.hold(turn.user.id, amount + fee, reference)
        if not held.ok:
            self.fail(ctx, turn, held.error)
            return None
        hold = held.value
        if hold.status != "active":
            # A replayed reference; the provider has already been asked once.
            logger.info(f"[{turn.correlation_id}] {reference} replayed after its hold was {hold.status}")
            self.say(ctx, turn, f"This purchase was already processed ({hold.status}).")
            return None

        try:
            result = call()
        except ProviderOutcomeUnknown as e:
            logger.warning(f"[{turn.correlation_id}] {reference} outcome unknown: {e}")
            ctx.wallet.capture(hold.id, category, fee=fee, description=description, metadata=metadata,
                               status=TransactionStatus.PENDING)
            self.say(ctx, turn, f"⏳ Your {description} is processing. We'll confirm shortly.")
            return None
        except (ProviderRejected, ProviderUnavailable, InvalidInput) as e:
            ctx.wallet.release(hold.id)
            ctx.activity.log(turn.user.id, f"{category.value}_failed", reference=reference, reason=str(e))
            self.fail(ctx, turn, e)
            if not isinstance(e, InvalidInput):
                self.say(ctx, turn, "You have not been charged.")
            return None

        if result.status == "failed":
            ctx.wallet.release(hold.id)
            self.fail(ctx, turn, ProviderRejected(result.message))
            self.say(ctx, turn, "You have not been charged.")
            return None

        status = TransactionStatus.COMPLETED if result.completed else TransactionStatus.PENDING
        if result.token:
            metadata = dict(metadata, token=result.token)
        captured = ctx.wallet.capture(hold.id, category, fee=fee, description=description, metadata=metadata,
                                      status=status, provider_reference=result.provider_reference)
        if not captured.ok:
            self.fail(ctx, turn, captured.error)
            return None
        ctx.activity.log(turn.user.id, f"{category.value}_purchase", reference=reference, status=status.value)

        if status == TransactionStatus.PENDING:
            self.say(ctx, turn, f"⏳ Your {description} is processing. We'll confirm shortly.")
            return result
        if result.token:
            lines = list(lines) + [("Token", result.token)]
        ctx.receipts.send(turn.phone, Receipt.for_transaction(captured.value, title, lines))
        return result


def confirm_body(title: str, rows: list, footer: str = "Reply YES to confirm or NO to cancel.") -> str:
    body = [f"*{title}*", ""]
    body += [f"{label}: {value}" for label, value in rows]
    return "\n".join(body + ["", footer])


def amount_rows(amount: Decimal, fee: Decimal) -> list:
    return [
        ("Amount", format_naira(amount)),
        ("Fee", format_naira(fee)),
        ("Total", format_naira(amount + fee)),
    ]
