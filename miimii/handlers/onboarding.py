"""
Onboarding
==========
New users get a personal welcome and the onboarding Flow (personal
details, BVN, PIN). The Flow's completion lands in ``complete``, which
saves the profile, sets the PIN, opens the wallet and queues virtual
account provisioning.
"""

import re
import logging
from datetime import datetime
from typing import Any, Dict

from miimii.context import AppContext
from miimii.errors import InvalidInput, ProviderUnavailable
from miimii.handlers.base import CommandHandler, Done, Outcome, Turn
from miimii.handlers.general import MENU
from miimii.intents import IntentClassification
from miimii.messages import FlowInvitation
from miimii.models import FlowType, Intent, KycStatus, OnboardingStep
from miimii.phone import mask
from miimii.pin import validate_new_pin

logger = logging.getLogger(__name__)

ONBOARDING_FIRST_SCREEN = "QUESTION_ONE"
BVN_PATTERN = re.compile(r"^\d{11}$")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")


def parse_date_of_birth(value: str) -> str:
    text = (value or "").strip()
    for fmt in DATE_FORMATS:
        try:
            born = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        return born.isoformat()
    raise InvalidInput("Please enter your date of birth as YYYY-MM-DD.")


def validate_profile(fields: Dict[str, Any]) -> Dict[str, str]:
    """Clean personal details and BVN; raise InvalidInput naming the first problem."""
    first = str(fields.get("first_name") or "").strip()
    last = str(fields.get("last_name") or "").strip()
    if not first or not last:
        full = str(fields.get("full_name") or "").split()
        if len(full) >= 2:
            first, last = full[0], full[-1]
    if not first or not last:
        raise InvalidInput("Please enter your first and last name.")
    bvn = re.sub(r"\s", "", str(fields.get("bvn") or ""))
    if not BVN_PATTERN.match(bvn):
        raise InvalidInput("Your BVN must be exactly 11 digits.")
    return {
        "first_name": first.title(),
        "last_name": last.title(),
        "middle_name": str(fields.get("middle_name") or "").strip().title(),
        "date_of_birth": parse_date_of_birth(str(fields.get("date_of_birth") or "")),
        "gender": str(fields.get("gender") or "").strip().lower(),
        "address": str(fields.get("address") or "").strip(),
        "bvn": bvn,
    }


class OnboardingHandler(CommandHandler):
    intent = Intent.ONBOARDING
    requires_onboarding = False

    def start(self, ctx: AppContext, turn: Turn, classification: IntentClassification) -> Outcome:
        user = turn.user
        if user.is_onboarded:
            self.say(ctx, turn, f"Welcome back, {user.greeting_name}! 👋")
            ctx.notifier.send(turn.phone, MENU)
            return Done()

        self.invite(ctx, turn, (
            f"👋 Hi {user.greeting_name}, welcome to *MiiMii*!\n\n"
            "Send money, buy airtime and data, and pay bills right here on WhatsApp. "
            "Tap below to open your account. It takes about two minutes."
        ))
        if user.onboarding_step == OnboardingStep.INITIAL:
            ctx.users.update(user, onboarding_step=OnboardingStep.GREETING)
        return Done()

    def require_setup(self, ctx: AppContext, turn: Turn) -> Outcome:
        """A wallet command from someone who hasn't finished onboarding."""
        self.invite(ctx, turn, "You'll need to finish setting up your MiiMii account first. Tap below to continue.")
        return Done()

    def invite(self, ctx: AppContext, turn: Turn, body: str):
        flow_id = ctx.settings.flow_id(FlowType.ONBOARDING.value)
        if not flow_id:
            logger.error("Onboarding requested but FLOW_ONBOARDING_ID is not configured")
            self.fail(ctx, turn, ProviderUnavailable("onboarding flow not configured"))
            return
        token = ctx.flow_tokens.mint(turn.user.id, FlowType.ONBOARDING.value, turn.phone, ONBOARDING_FIRST_SCREEN)
        ctx.notifier.send(turn.phone, FlowInvitation(
            flow_id=flow_id,
            flow_token=token,
            body=body,
            cta="Open Account",
            initial_screen=ONBOARDING_FIRST_SCREEN,
            header="MiiMii",
        ))

    def complete(self, ctx: AppContext, turn: Turn, fields: Dict[str, Any]) -> Outcome:
        """Finish onboarding from a Flow completion payload."""
        user = turn.user
        if user.is_onboarded:
            self.say(ctx, turn, "Your account is already set up. Reply *menu* to get started.")
            return Done()

        try:
            profile = validate_profile(fields)
            pin_hash = fields.get("pin_hash")
            pin = None if pin_hash else validate_new_pin(fields.get("pin"), fields.get("confirm_pin"))
        except InvalidInput as e:
            self.fail(ctx, turn, e)
            self.invite(ctx, turn, "Please fill in the form again.")
            return Done()

        ctx.users.update(
            user,
            first_name=profile["first_name"],
            last_name=profile["last_name"],
            date_of_birth=profile["date_of_birth"],
            kyc_data={key: profile[key] for key in ("middle_name", "gender", "address", "bvn")},
            kyc_status=KycStatus.PENDING,
            onboarding_step=OnboardingStep.KYC_VERIFYING,
        )
        ctx.users.update(user, onboarding_step=OnboardingStep.PIN_SETUP)
        if pin_hash:
            ctx.pins.set_pin_hash(user, pin_hash)
        else:
            ctx.pins.set_pin(user, pin)

        ctx.users.update(user, onboarding_step=OnboardingStep.ACCOUNT_PROVISIONING)
        ctx.wallet.create_wallet(user.id)
        ctx.users.update(user, onboarding_step=OnboardingStep.COMPLETED)
        ctx.activity.log(user.id, "onboarding_completed")
        logger.info(f"Onboarding completed for {mask(user.phone)}")

        self.say(ctx, turn, f"🎉 Welcome, {user.first_name}! Your account is almost ready. "
                            "I'll send your account number in a moment.")
        if ctx.provisioner is not None:
            ctx.provisioner.enqueue(user.id)
        return Done()
