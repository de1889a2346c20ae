"""
Bank transfer
=============
Transfer.AwaitingDetails -> Transfer.AwaitingConfirm -> Transfer.AwaitingPin -> execute

Execution debits the wallet, persists the debit as ``pending`` and only
then calls the bank. A rejection (or a breaker that refused the call
before it left the process) is compensated at once. An unknown outcome
stays pending for the reconciler.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from miimii.context import AppContext
from miimii.errors import (
    InsufficientFunds, InvalidInput, ProviderOutcomeUnknown, ProviderRejected, ProviderUnavailable,
)
from miimii.fees import TRANSFER_MAX, TRANSFER_MIN, transfer_fee
from miimii.handlers.base import (
    CONFIRM, CommandHandler, Continue, Done, Outcome, Turn, amount_rows, confirm_body, make_reference,
)
from miimii.intents import IntentClassification, extract_entities
from miimii.models import Category, ConversationState, Intent, TransactionStatus, format_naira, money
from miimii.receipts import Receipt

logger = logging.getLogger(__name__)

DETAILS = "Transfer.AwaitingDetails"
CONFIRMING = "Transfer.AwaitingConfirm"
PIN = "Transfer.AwaitingPin"
REQUIRED = ("amount", "account_number", "bank_code")


class TransferHandler(CommandHandler):
    intent = Intent.TRANSFER
    moves_money = True
    context_prefix = "Transfer."

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
            self.say(ctx, turn, "Reply YES to send the money or NO to cancel.")
            return Continue(state.advance(turn.now))

        if state.context == PIN:
            outcome = self.check_pin(ctx, turn, state)
            if outcome is not None:
                return outcome
            return self._execute(ctx, turn, state.data)

        return Done()

    def expired_notice(self, state: ConversationState) -> Optional[str]:
        if state.context in (CONFIRMING, PIN) and state.data.get("amount"):
            return (f"⌛ Your pending transfer of {format_naira(state.data['amount'])} to "
                    f"{state.data.get('account_name', 'the recipient')} has expired and was not sent.")
        return None

    # ------------------------------------------------------------------

    def _collect(self, ctx: AppContext, turn: Turn, details: Dict[str, Any],
                 state: Optional[ConversationState]) -> Outcome:
        missing = [key for key in REQUIRED if not details.get(key)]
        if missing:
            self.say(ctx, turn, _details_prompt(details, missing))
            return self._awaiting_details(turn, details, state)

        amount = money(details["amount"])
        if amount < TRANSFER_MIN or amount > TRANSFER_MAX:
            self.say(ctx, turn, f"Transfers must be between {format_naira(TRANSFER_MIN)} and "
                                f"{format_naira(TRANSFER_MAX)}. How much would you like to send?")
            details.pop("amount")
            return self._awaiting_details(turn, details, state)

        try:
            enquiry = ctx.gateway.name_enquiry(details["account_number"], details["bank_code"])
        except ProviderRejected:
            enquiry = None
        except ProviderUnavailable as e:
            self.fail(ctx, turn, e)
            return Done()
        if enquiry is None or not enquiry.account_name:
            self.say(ctx, turn, f"I couldn't find account {details['account_number']} at "
                                f"{details.get('bank_name') or 'that bank'}. Please check the account number.")
            details.pop("account_number")
            return self._awaiting_details(turn, details, state)

        fee = transfer_fee(amount)
        summary = ctx.wallet.get_summary(turn.user.id)
        if summary is None:
            self.fail(ctx, turn, InvalidInput("You don't have a wallet yet. Please complete your setup."))
            return Done()
        if amount + fee > summary.available:
            self.fail(ctx, turn, InsufficientFunds(
                f"Insufficient balance. You need {format_naira(amount + fee)} but have "
                f"{format_naira(summary.available)} available."
            ))
            return Done()

        data = {
            "amount": str(amount),
            "fee": str(fee),
            "account_number": details["account_number"],
            "bank_code": details["bank_code"],
            "bank_name": details.get("bank_name") or enquiry.bank_name,
            "account_name": enquiry.account_name,
            "reference": make_reference("TXN", turn.user.id, turn.now),
        }
        self.ask_confirmation(ctx, turn, confirm_body("Confirm transfer", [
            ("To", data["account_name"]),
            ("Account", f"{data['account_number']} ({data['bank_name']})"),
        ] + amount_rows(amount, fee)))
        return Continue(ConversationState.start(Intent.TRANSFER.value, "confirmation", CONFIRMING, data,
                                                now=turn.now))

    def _awaiting_details(self, turn: Turn, details: Dict[str, Any],
                          state: Optional[ConversationState]) -> Continue:
        data = {key: str(value) for key, value in details.items() if value}
        if state is None:
            return Continue(ConversationState.start(Intent.TRANSFER.value, "transfer_details", DETAILS, data,
                                                    now=turn.now))
        return Continue(state.advance(turn.now, data=data, context=DETAILS, awaiting_input="transfer_details"))

    def _execute(self, ctx: AppContext, turn: Turn, data: Dict[str, Any]) -> Outcome:
        amount, fee, reference = Decimal(data["amount"]), Decimal(data["fee"]), data["reference"]
        description = f"Transfer to {data['account_name']}"
        debit = ctx.wallet.debit(
            turn.user.id, amount, reference, fee=fee, category=Category.TRANSFER, description=description,
            metadata={key: data[key] for key in ("account_number", "bank_code", "bank_name", "account_name")},
        )
        if not debit.ok:
            self.fail(ctx, turn, debit.error)
            return Done()
        if debit.value.status != TransactionStatus.INITIATED:
            self.say(ctx, turn, f"This transfer was already processed ({debit.value.status.value}).")
            return Done()
        ctx.wallet.mark_status(reference, TransactionStatus.PENDING)

        try:
            with ctx.wallet.in_flight(reference):
                result = ctx.gateway.transfer(
                    reference, data["account_number"], data["bank_code"], amount,
                    narration=f"MiiMii transfer from {turn.user.greeting_name}",
                    sender_name=" ".join(filter(None, [turn.user.first_name, turn.user.last_name])),
                )
        except ProviderOutcomeUnknown as e:
            logger.warning(f"[{turn.correlation_id}] Transfer {reference} outcome unknown: {e}")
            ctx.wallet.hand_off(reference)
            ctx.activity.log(turn.user.id, "transfer_pending", reference=reference)
            self.say(ctx, turn, f"⏳ Your transfer of {format_naira(amount)} to {data['account_name']} is "
                                f"processing. We'll confirm shortly.\nRef: {reference}")
            return Done()
        except (ProviderRejected, ProviderUnavailable) as e:
            # Rejected, or never sent (breaker open, connection refused).
            self._compensate(ctx, turn, reference, str(e))
            self.fail(ctx, turn, e)
            self.say(ctx, turn, f"{format_naira(amount + fee)} has been returned to your wallet.")
            return Done()

        if result.status == "failed":
            self._compensate(ctx, turn, reference, result.message)
            self.say(ctx, turn, f"❌ The transfer was declined{': ' + result.message if result.message else '.'}\n"
                                f"{format_naira(amount + fee)} has been returned to your wallet.")
            return Done()

        if result.completed:
            status = TransactionStatus.COMPLETED
            marked = ctx.wallet.mark_status(reference, status, provider_reference=result.provider_reference)
        else:
            status = TransactionStatus.PENDING
            marked = ctx.wallet.hand_off(reference, result.provider_reference)
        if not marked.ok:
            logger.error(f"[{turn.correlation_id}] Provider accepted {reference} "
                         f"but the ledger refused: {marked.error}")
        ctx.activity.log(turn.user.id, "transfer", reference=reference, status=status.value)
        if status == TransactionStatus.PENDING or not marked.ok:
            self.say(ctx, turn, f"⏳ Your transfer of {format_naira(amount)} to {data['account_name']} is "
                                f"processing. We'll confirm shortly.\nRef: {reference}")
            return Done()

        ctx.receipts.send(turn.phone, Receipt.for_transaction(marked.value, "Transfer Receipt", [
            ("Recipient", data["account_name"]),
            ("Account", f"{data['account_number']} ({data['bank_name']})"),
        ]))
        return Done()

    def _compensate(self, ctx: AppContext, turn: Turn, reference: str, reason: str):
        reversed_ = ctx.wallet.reverse(reference, reason)
        if not reversed_.ok:
            logger.error(f"[{turn.correlation_id}] Compensation of {reference} failed: {reversed_.error}")
        ctx.activity.log(turn.user.id, "transfer_reversed", reference=reference, reason=reason)


def _details(entities: Dict[str, Any]) -> Dict[str, Any]:
    return {key: entities[key] for key in REQUIRED + ("bank_name",) if entities.get(key)}


def _details_prompt(details: Dict[str, Any], missing) -> str:
    names = {"amount": "the amount", "account_number": "the 10-digit account number", "bank_code": "the bank"}
    lines = ["💸 To send money I need " + ", ".join(names[key] for key in missing) + "."]
    if details:
        have = []
        if details.get("amount"):
            have.append(format_naira(details["amount"]))
        if details.get("account_number"):
            have.append(details["account_number"])
        if details.get("bank_name"):
            have.append(details["bank_name"])
        lines.append("So far: " + ", ".join(have))
    lines.append("Example: *Send 5000 to 0123456789 GTBank*")
    return "\n".join(lines)
