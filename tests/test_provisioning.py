from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from miimii.errors import ProviderRejected, ProviderUnavailable
from miimii.models import KycStatus, OnboardingStep, WalletState
from miimii.provisioning import RETRY_DELAYS, AccountProvisioner


@pytest.fixture
def applicant(ctx, user):
    ctx.users.update(user, date_of_birth="1990-01-15", kyc_status=KycStatus.PENDING,
                     kyc_data={"bvn": "22222222222", "gender": "female", "middle_name": "", "address": ""})
    return user


def provisioner(ctx, scheduler=None):
    return AccountProvisioner(ctx.users, ctx.wallet, ctx.gateway, ctx.notifier, ctx.activity,
                              scheduler=scheduler, clock=ctx.clock)


class TestProvisioning:

    def test_account_attached_and_user_told(self, ctx, gateway, platform, applicant):
        account = provisioner(ctx).provision(applicant.id)

        assert account.account_number == "9012345678"
        wallet = ctx.wallet.get_wallet(applicant.id)
        assert wallet.state == WalletState.ACTIVE
        assert wallet.virtual_account.bank_name == "BellBank"
        assert ctx.users.get(applicant.id).kyc_status == KycStatus.VERIFIED
        assert "9012345678" in platform.last_text()

        profile = gateway.called("create_virtual_account")[0][2]
        assert profile["bvn"] == "22222222222"
        assert profile["date_of_birth"] == "1990-01-15"

    def test_already_provisioned_is_a_no_op(self, ctx, gateway, applicant):
        provisioner(ctx).provision(applicant.id)
        provisioner(ctx).provision(applicant.id)
        assert len(gateway.called("create_virtual_account")) == 1

    def test_rejection_sends_user_back_to_the_form(self, ctx, gateway, platform, applicant):
        gateway.account_error = ProviderRejected("BVN does not match")
        assert provisioner(ctx).provision(applicant.id) is None

        user = ctx.users.get(applicant.id)
        assert user.kyc_status == KycStatus.REJECTED
        assert user.onboarding_step == OnboardingStep.KYC_COLLECTION
        assert "reply *register*" in platform.last_text()

    def test_outage_is_rescheduled(self, ctx, gateway, applicant, clock):
        gateway.account_error = ProviderUnavailable("bank down")
        scheduler = MagicMock()
        provisioner(ctx, scheduler).provision(applicant.id)

        scheduler.add_job.assert_called_once()
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["run_date"] == clock() + RETRY_DELAYS[0]
        assert kwargs["id"] == f"provision:{applicant.id}"
        assert kwargs["args"] == [applicant.id]

    def test_gives_up_after_the_last_delay(self, ctx, gateway, platform, applicant):
        gateway.account_error = ProviderUnavailable("bank down")
        scheduler = MagicMock()
        worker = provisioner(ctx, scheduler)
        for _ in range(len(RETRY_DELAYS) + 1):
            worker.provision(applicant.id)

        assert scheduler.add_job.call_count == len(RETRY_DELAYS)
        assert "taking longer than expected" in platform.last_text()

    def test_enqueue_uses_a_one_off_job(self, ctx, applicant, clock):
        scheduler = MagicMock()
        provisioner(ctx, scheduler).enqueue(applicant.id, timedelta(minutes=2))
        args = scheduler.add_job.call_args
        assert args.args[1] == "date"
        assert args.kwargs["replace_existing"] is True
        assert args.kwargs["run_date"] == clock() + timedelta(minutes=2)
