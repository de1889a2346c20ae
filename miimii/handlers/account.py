"""
Balance and account details.
"""

import logging

from miimii.context import AppContext
from miimii.handlers.base import CommandHandler, Done, Outcome, Turn
from miimii.intents import IntentClassification
from miimii.models import Intent, TransactionType, WalletState, format_naira

logger = logging.getLogger(__name__)

SETTING_UP = "⏳ Your MiiMii account is still being set up. I'll message you as soon as it's ready."


class BalanceHandler(CommandHandler):
    intent = Intent.BALANCE

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        summary = ctx.wallet.get_summary(turn.user.id)
        if summary is None:
            self.say(ctx, turn, SETTING_UP)
            return Done()

        lines = [f"💰 *Balance:* {format_naira(summary.available)}"]
        lines.append(f"Daily limit left: {format_naira(summary.daily_remaining)}")

        recent = ctx.wallet.recent_transactions(turn.user.id, limit=3)
        if recent:
            lines += ["", "*Recent:*"]
            for txn in recent:
                sign = "-" if txn.type == TransactionType.DEBIT else "+"
                lines.append(f"{sign}{format_naira(txn.total_amount)} {txn.description or txn.category.value} "
                             f"({txn.status.value})")
        self.say(ctx, turn, "\n".join(lines))
        return Done()


class AccountDetailsHandler(CommandHandler):
    intent = Intent.ACCOUNT_DETAILS

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        wallet = ctx.wallet.get_wallet(turn.user.id)
        if wallet is None or wallet.state == WalletState.PROVISIONING or not wallet.virtual_account:
            self.say(ctx, turn, SETTING_UP)
            return Done()
        account = wallet.virtual_account
        self.say(ctx, turn, "\n".join([
            "🏦 *Your MiiMii account*",
            "",
            f"Account number: {account.account_number}",
            f"Bank: {account.bank_name}",
            f"Name: {account.account_name}",
            "",
            "Transfer into this account to fund your wallet.",
        ]))
        return Done()
