"""
Conversation engine
===================
Runs one inbound event for one user to completion:

1. Flow completions go to the Flow submission handler whatever the state.
2. A live conversation state is resumed by the handler that owns it.
3. Otherwise the text is classified and dispatched.

Expired states are dropped (with a notice when the handler asks for one)
and the event is then treated as if the user were idle. Cancellation
words clear any open state without counting as a PIN failure.

Callers must serialize events per user; see ``miimii.worker``.
"""

import re
import logging
from typing import Optional

from miimii.context import AppContext
from miimii.dispatcher import Dispatcher
from miimii.errors import InvalidPhoneNumber, MiiMiiError, describe, new_correlation_id
from miimii.events import FlowSubmission, InboundEvent, StatusUpdate, Verification, text_of
from miimii.flows import FlowSubmissionHandler, has_login_session, send_login_invitation
from miimii.handlers.base import Cancel, CommandHandler, Continue, Done, Outcome, Turn
from miimii.intents import IntentClassification
from miimii.models import ConversationState, Intent
from miimii.phone import mask, normalize

logger = logging.getLogger(__name__)

CANCEL = re.compile(r"^(cancel|stop|no)$", re.IGNORECASE)


class ConversationEngine:

    def __init__(self, ctx: AppContext, dispatcher: Dispatcher = None):
        self.ctx = ctx
        self.dispatcher = dispatcher or Dispatcher()
        self.flows = FlowSubmissionHandler(self.dispatcher.onboarding, self.dispatcher.data)

    def handle(self, event: InboundEvent) -> Optional[str]:
        """Process one event; returns the turn's correlation id (None for non-user events)."""
        if isinstance(event, Verification):
            return None
        if isinstance(event, StatusUpdate):
            self.ctx.notifier.record_status(event)
            return None

        try:
            phone = normalize(event.phone, self.ctx.settings.default_country_code)
        except InvalidPhoneNumber:
            logger.warning(f"Dropping event {event.message_id} from unparseable sender")
            return None

        user, created = self.ctx.users.get_or_create(phone, event.contact_name)
        if user.disabled:
            logger.info(f"Ignoring message from disabled user {mask(phone)}")
            return None

        self.ctx.notifier.acknowledge(event.message_id)
        turn = Turn(user=user, event=event, text=text_of(event),
                    correlation_id=new_correlation_id(), now=self.ctx.clock())
        try:
            self._run(turn)
        except MiiMiiError as e:
            logger.error(f"[{turn.correlation_id}] {type(e).__name__} for {mask(phone)}: {e}")
            self._recover(turn, e)
        except Exception as e:
            logger.error(f"[{turn.correlation_id}] Unhandled error for {mask(phone)}: {e}", exc_info=True)
            self._recover(turn, e)
        return turn.correlation_id

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    def _run(self, turn: Turn):
        user = turn.user

        if isinstance(turn.event, FlowSubmission):
            open_state = user.conversation
            self.flows.handle(self.ctx, turn)
            token = turn.event.flow_token or turn.event.response_json.get("flow_token")
            if open_state is not None and open_state.data.get("flow_token") == token:
                self.ctx.users.set_conversation(user, None)
            return

        state = user.conversation
        if state is not None and state.is_expired(turn.now):
            self._expire(turn, state)
            state = None

        if state is not None:
            if CANCEL.match(turn.text):
                logger.info(f"[{turn.correlation_id}] User cancelled {state.context}")
                self.ctx.users.set_conversation(user, None)
                self.ctx.notifier.text(turn.phone, "Cancelled. Reply *menu* to see what else I can do.")
                return
            handler = self.dispatcher.for_state(state)
            if handler is None:
                self.ctx.users.set_conversation(user, None)
            else:
                self._apply(turn, handler.resume(self.ctx, turn, state))
                return

        if turn.text:
            classification = self.ctx.classifier.classify(turn.text, user.is_onboarded)
        else:
            classification = IntentClassification(Intent.UNKNOWN, 0.0)
        handler = self.dispatcher.dispatch(user, classification, turn.event)
        logger.info(f"[{turn.correlation_id}] {mask(turn.phone)} -> {classification.intent.value} "
                    f"({classification.confidence:.2f}) handled by {type(handler).__name__}")

        if self._needs_login(handler, turn):
            send_login_invitation(self.ctx, turn)
            return
        self._apply(turn, handler.start(self.ctx, turn, classification))

    def _needs_login(self, handler: CommandHandler, turn: Turn) -> bool:
        return (
            self.ctx.settings.require_login_session
            and handler.moves_money
            and not has_login_session(self.ctx, turn.user)
        )

    def _expire(self, turn: Turn, state: ConversationState):
        logger.info(f"[{turn.correlation_id}] Conversation {state.context} expired")
        handler = self.dispatcher.for_state(state)
        notice = handler.expired_notice(state) if handler else None
        self.ctx.users.set_conversation(turn.user, None)
        if notice:
            self.ctx.notifier.text(turn.phone, notice)

    def _apply(self, turn: Turn, outcome: Outcome):
        if isinstance(outcome, Continue):
            self.ctx.users.set_conversation(turn.user, outcome.state)
        elif isinstance(outcome, (Done, Cancel)):
            if turn.user.conversation is not None:
                self.ctx.users.set_conversation(turn.user, None)
        else:
            raise TypeError(f"Handler returned {outcome!r}")

    def _recover(self, turn: Turn, error: BaseException):
        """Tell the user something went wrong and drop the conversation."""
        try:
            if turn.user.conversation is not None:
                self.ctx.users.set_conversation(turn.user, None)
        except Exception as e:
            logger.error(f"[{turn.correlation_id}] Could not clear conversation: {e}")
        self.ctx.notifier.text(turn.phone, describe(error, turn.correlation_id))

