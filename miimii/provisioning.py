"""
Virtual account provisioning
============================
After onboarding completes, a dedicated NUBAN is created for the user at
the bank provider. The work runs on the background scheduler so the
onboarding turn never waits on it. Transient provider failures are
retried with growing delays, a rejection (bad BVN or details) sends the
user back to the onboarding form.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from miimii.activity import ActivityLog
from miimii.errors import ProviderRejected, ProviderUnavailable
from miimii.models import KycStatus, OnboardingStep, VirtualAccount, utcnow
from miimii.notifications import NotificationEmitter
from miimii.phone import mask
from miimii.providers.gateway import ProviderGateway
from miimii.users import UserRepository
from miimii.wallet import WalletService

logger = logging.getLogger(__name__)

RETRY_DELAYS = (timedelta(seconds=30), timedelta(minutes=2), timedelta(minutes=10),
                timedelta(minutes=30), timedelta(hours=1))


class AccountProvisioner:

    def __init__(self, users: UserRepository, wallet: WalletService, gateway: ProviderGateway,
                 notifier: NotificationEmitter, activity: ActivityLog, scheduler=None,
                 clock: Callable[[], datetime] = utcnow):
        self.users = users
        self.wallet = wallet
        self.gateway = gateway
        self.notifier = notifier
        self.activity = activity
        self.scheduler = scheduler
        self.clock = clock

    def enqueue(self, user_id: str, delay: timedelta = timedelta(0)):
        if self.scheduler is None:
            # No scheduler (tests, one-off scripts): do it now.
            self.provision(user_id)
            return
        self.scheduler.add_job(
            self.provision,
            "date",
            run_date=self.clock() + delay,
            args=[user_id],
            id=f"provision:{user_id}",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        logger.info(f"Provisioning queued for user {user_id} in {int(delay.total_seconds())}s")

    def provision(self, user_id: str) -> Optional[VirtualAccount]:
        user = self.users.get(user_id)
        if user is None:
            logger.error(f"Provisioning skipped: unknown user {user_id}")
            return None
        wallet = self.wallet.get_wallet(user_id) or self.wallet.create_wallet(user_id)
        if wallet.virtual_account:
            return wallet.virtual_account

        attempts = self.wallet.record_provisioning_attempt(user_id)
        profile = {
            "first_name": user.first_name,
            "last_name": user.last_name,
            "middle_name": user.kyc_data.get("middle_name", ""),
            "phone": user.phone,
            "bvn": user.kyc_data.get("bvn", ""),
            "date_of_birth": user.date_of_birth,
            "gender": user.kyc_data.get("gender", ""),
            "address": user.kyc_data.get("address", ""),
        }

        try:
            details = self.gateway.create_virtual_account(f"VA_{user_id.replace('-', '')}", profile)
        except ProviderRejected as e:
            logger.warning(f"Virtual account rejected for {mask(user.phone)}: {e}")
            self.users.update(user, kyc_status=KycStatus.REJECTED, onboarding_step=OnboardingStep.KYC_COLLECTION)
            self.activity.log(user_id, "provisioning_rejected", reason=str(e))
            self.notifier.text(
                user.phone,
                "We couldn't verify your details with the bank. Please check your name, "
                "date of birth and BVN, then reply *register* to try again.",
            )
            return None
        except ProviderUnavailable as e:
            if attempts <= len(RETRY_DELAYS):
                delay = RETRY_DELAYS[attempts - 1]
                logger.warning(f"Provisioning attempt {attempts} for {mask(user.phone)} failed: {e}; "
                               f"retrying in {int(delay.total_seconds())}s")
                if self.scheduler is not None:
                    self.enqueue(user_id, delay)
            else:
                logger.error(f"Provisioning gave up for {mask(user.phone)} after {attempts} attempts: {e}")
                self.activity.log(user_id, "provisioning_abandoned", attempts=attempts)
                self.notifier.text(
                    user.phone,
                    "Setting up your account is taking longer than expected. Our team has been notified.",
                )
            return None

        account = VirtualAccount(
            account_number=details.account_number,
            bank_name=details.bank_name,
            account_name=details.account_name,
            bank_code=details.bank_code,
        )
        self.wallet.attach_virtual_account(user_id, account)
        self.users.update(user, kyc_status=KycStatus.VERIFIED)
        self.activity.log(user_id, "provisioning_completed", bank=account.bank_name)
        logger.info(f"Virtual account ready for {mask(user.phone)} after {attempts} attempt(s)")
        self.notifier.text(
            user.phone,
            f"🎉 Your account is {account.account_number} at {account.bank_name}.\n\n"
            f"Fund it by transfer to start sending money and buying airtime.",
        )
        return account
