"""
Airtime and electricity purchases driven from chat: hold, provider call,
then capture or release.
"""

from decimal import Decimal

import pytest

from miimii.errors import ProviderOutcomeUnknown, ProviderRejected
from miimii.handlers.airtime import AirtimeHandler
from miimii.handlers.base import Turn
from miimii.messages import ButtonPrompt
from miimii.models import TransactionStatus
from miimii.providers.base import ProviderResult
from miimii.state_machine import ConversationEngine

from conftest import text_event


@pytest.fixture
def engine(ctx):
    return ConversationEngine(ctx)


def run(engine, *texts):
    for text in texts:
        engine.handle(text_event(text))


# -----------------------------------------------------------------------
# Airtime
# -----------------------------------------------------------------------

class TestAirtime:

    def test_purchase(self, ctx, engine, platform, gateway, user):
        run(engine, "buy 500 airtime for 08031234567 mtn")
        prompt = platform.sent[-1][1]
        assert isinstance(prompt, ButtonPrompt)
        assert "08031234567" in prompt.body

        run(engine, "yes", "1234")
        call = gateway.called("buy_airtime")[0]
        assert call[0:1] + call[2:] == ("buy_airtime", "MTN", "08031234567", Decimal("500.00"))
        assert call[1].startswith("AIRTIME_")

        assert ctx.wallet.get_summary(user.id).available == Decimal("19500.00")
        assert ctx.wallet.find_transaction(call[1]).status == TransactionStatus.COMPLETED
        assert platform.documents[-1][2] == "Airtime Receipt"

    def test_missing_network_is_asked_for(self, ctx, engine, platform, gateway, user):
        run(engine, "buy 500 airtime")
        assert "Which network" in platform.last_text()
        run(engine, "mtn", "yes", "1234")
        assert gateway.called("buy_airtime")[0][3] == "08012345678"

    def test_out_of_range_amount(self, engine, platform, user):
        run(engine, "buy 20 airtime mtn")
        assert "between ₦50 and ₦50,000" in platform.last_text()

    def test_rejection_releases_the_hold(self, ctx, engine, platform, gateway, user):
        gateway.vas_error = ProviderRejected("Invalid number")
        run(engine, "buy 500 airtime for 08031234567 mtn", "yes", "1234")
        summary = ctx.wallet.get_summary(user.id)
        assert summary.available == Decimal("20000.00")
        assert summary.pending == Decimal("0.00")
        assert platform.last_text() == "You have not been charged."

    def test_unknown_outcome_is_left_pending(self, ctx, engine, platform, gateway, user):
        gateway.vas_error = ProviderOutcomeUnknown("read timeout")
        run(engine, "buy 500 airtime for 08031234567 mtn", "yes", "1234")
        reference = gateway.called("buy_airtime")[0][1]
        assert ctx.wallet.find_transaction(reference).status == TransactionStatus.PENDING
        assert "processing" in platform.last_text()

    @pytest.mark.parametrize("first_error", [ProviderRejected("Invalid number"), None])
    def test_replayed_reference_is_not_sent_again(self, ctx, platform, gateway, clock, user, first_error):
        handler = AirtimeHandler()
        turn = Turn(user=user, event=text_event("1234"), text="1234", correlation_id="c-1", now=clock())
        data = {"amount": "500", "fee": "0", "reference": "AIRTIME_REPLAY", "network": "MTN",
                "phone": "08031234567"}

        gateway.vas_error = first_error
        handler._execute(ctx, turn, data)
        after_first = ctx.wallet.get_summary(user.id).available
        gateway.vas_error = None
        handler._execute(ctx, turn, data)

        assert len(gateway.called("buy_airtime")) == 1
        assert ctx.wallet.get_summary(user.id).available == after_first
        assert platform.last_text().startswith("This purchase was already processed")


# -----------------------------------------------------------------------
# Electricity
# -----------------------------------------------------------------------

class TestBills:

    def test_prepaid_token_on_receipt(self, ctx, engine, platform, gateway, user):
        gateway.vas_result = ProviderResult("completed", provider_reference="V2", token="1234-5678-9012")
        platform.fail_documents = True
        run(engine, "pay 5000 ikeja prepaid meter 45012345678")
        assert "₦75" in platform.sent[-1][1].body

        run(engine, "yes", "1234")
        assert gateway.called("pay_bill")[0][2:] == ("IKEJA", "prepaid", "45012345678", Decimal("5000.00"))
        assert ctx.wallet.get_summary(user.id).available == Decimal("14925.00")
        assert "Token: 1234-5678-9012" in platform.last_text()

    def test_missing_details_are_listed(self, engine, platform, user):
        run(engine, "pay electricity bill")
        text = platform.last_text()
        assert "the meter number" in text
        assert "prepaid or postpaid" in text

    def test_minimum_amount(self, engine, platform, user):
        run(engine, "pay 300 eko prepaid 45012345678")
        assert "minimum electricity payment is ₦500" in platform.last_text()
