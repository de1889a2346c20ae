"""
Menu, help and the messages the agent sends when it can't act on a turn
(unreadable media, unsupported message types, unclear requests).
"""

import logging

from miimii.context import AppContext
from miimii.handlers.base import CommandHandler, Done, Outcome, Turn
from miimii.intents import IntentClassification
from miimii.messages import ListPrompt, ListRow, ListSection
from miimii.models import Intent

logger = logging.getLogger(__name__)

MENU = ListPrompt(
    body="What would you like to do?",
    button_text="Menu",
    header="MiiMii",
    sections=[
        ListSection("Money", [
            ListRow("check_balance", "Check balance", "See your available balance"),
            ListRow("send_money", "Send money", "Transfer to any Nigerian bank"),
            ListRow("account_details", "Account details", "Your account number for funding"),
        ]),
        ListSection("Payments", [
            ListRow("buy_airtime", "Buy airtime", "MTN, Airtel, Glo, 9mobile"),
            ListRow("buy_data", "Buy data", "Data bundles for any network"),
            ListRow("pay_bills", "Pay electricity", "Prepaid and postpaid meters"),
        ]),
        ListSection("Settings", [
            ListRow("change_pin", "Change PIN", "Set a new transaction PIN"),
            ListRow("help", "Help", "What I can do"),
        ]),
    ],
)

HELP_TEXT = "\n".join([
    "👋 *Here's what I can do:*",
    "",
    "💰 *balance* - check your balance",
    "💸 *Send 5000 to 0123456789 GTBank* - bank transfer",
    "📱 *Buy 1000 MTN airtime* - airtime for you or *for 0803...*",
    "📶 *Buy data* - pick a bundle",
    "⚡ *Pay 5000 Ikeja prepaid 45012345678* - electricity",
    "🏦 *account details* - your funding account",
    "",
    "Reply *menu* any time, or *cancel* to stop what you're doing.",
])


class MenuHandler(CommandHandler):
    intent = Intent.MENU
    requires_onboarding = False

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        if not turn.user.is_onboarded:
            return HelpHandler().start(ctx, turn, classification)
        self.say(ctx, turn, f"Hi {turn.user.greeting_name} 👋")
        ctx.notifier.send(turn.phone, MENU)
        return Done()


class HelpHandler(CommandHandler):
    intent = Intent.HELP
    requires_onboarding = False

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        text = HELP_TEXT
        if not turn.user.is_onboarded:
            text += "\n\nFirst, reply *register* to open your MiiMii account."
        self.say(ctx, turn, text)
        return Done()


class UnclearHandler(CommandHandler):
    """Low-confidence classification: offer the menu instead of guessing."""
    requires_onboarding = False

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        self.say(ctx, turn, "Sorry, I didn't quite get that. Pick an option below or reply *help*.")
        if turn.user.is_onboarded:
            ctx.notifier.send(turn.phone, MENU)
        return Done()


class MediaHandler(CommandHandler):
    """Voice notes, images and documents without a caption we can read."""
    requires_onboarding = False

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        kind = getattr(turn.event, "kind", "message")
        noun = {"audio": "voice notes", "image": "images", "document": "documents",
                "video": "videos", "sticker": "stickers"}.get(kind, "that kind of message")
        self.say(ctx, turn, f"I can't read {noun} yet. Please type your request, e.g. *balance* or *help*.")
        return Done()


class UnsupportedHandler(CommandHandler):
    requires_onboarding = False

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        logger.info(f"Unsupported message type {getattr(turn.event, 'type', '?')} from user {turn.user.id}")
        self.say(ctx, turn, "I can only handle text messages and button taps. Please type your request.")
        return Done()
