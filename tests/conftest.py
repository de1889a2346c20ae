"""
Shared fixtures: a temporary SQLite database, a recording platform client,
a scripted provider gateway and a clock the tests can move.
"""

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from miimii.activity import ActivityLog
from miimii.config import Settings
from miimii.context import AppContext
from miimii.data_plans import DataPlanCatalog
from miimii.database import Database
from miimii.errors import ProviderRejected
from miimii.events import TextMessage
from miimii.flow_tokens import FlowTokenService
from miimii.intents import RuleBasedClassifier
from miimii.messages import FlowInvitation, Text
from miimii.models import OnboardingStep
from miimii.notifications import NotificationEmitter
from miimii.pin import PinService
from miimii.providers.base import NameEnquiry, ProviderResult, VirtualAccountDetails
from miimii.providers.bilal import BilalAdapter
from miimii.receipts import ReceiptService
from miimii.session_store import DatabaseKVBackend, SessionStore
from miimii.users import UserRepository
from miimii.wallet import WalletService

PHONE = "+2348012345678"


class Clock:
    """Callable clock; starts at a fixed instant and only moves when told."""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakePlatform:
    """Stands in for PlatformClient and records everything sent."""

    def __init__(self):
        self.sent = []
        self.read = []
        self.documents = []
        self.fail_documents = False
        self._ids = itertools.count(1)

    def send(self, to, message):
        self.sent.append((to, message))
        return f"wamid.out.{next(self._ids)}"

    def mark_read_with_typing(self, message_id):
        self.read.append(message_id)

    def send_media(self, to, content, mime_type, filename, kind, caption=""):
        from miimii.whatsapp_client import PlatformError
        if self.fail_documents:
            raise PlatformError("upload failed")
        self.documents.append((to, filename, caption, content))
        return f"wamid.doc.{next(self._ids)}"

    def texts(self):
        return [message.body for _, message in self.sent if isinstance(message, Text)]

    def last_text(self):
        texts = self.texts()
        return texts[-1] if texts else ""

    def invitations(self):
        return [message for _, message in self.sent if isinstance(message, FlowInvitation)]


class FakeGateway:
    """Scripted provider gateway; set *_error to raise, *_result to answer."""

    def __init__(self):
        self.accounts = {("0030826783", "000023"): "John Doe", ("0123456789", "058"): "Jane Roe"}
        self.transfer_result = ProviderResult("completed", provider_reference="R1")
        self.transfer_error = None
        self.vas_result = ProviderResult("completed", provider_reference="V1")
        self.vas_error = None
        self.status_result = ProviderResult("pending")
        self.status_error = None
        self.account_error = None
        self.calls = []
        self.vas = BilalAdapter("http://bilal.test", "user", "secret")

    def name_enquiry(self, account_number, bank_code):
        self.calls.append(("name_enquiry", account_number, bank_code))
        name = self.accounts.get((account_number, bank_code))
        if not name:
            raise ProviderRejected("Account not found")
        return NameEnquiry(account_number, name, bank_code, "BellBank")

    def transfer(self, reference, account_number, bank_code, amount, narration="", sender_name=""):
        self.calls.append(("transfer", reference, amount))
        if self.transfer_error:
            raise self.transfer_error
        return self.transfer_result

    def _vas(self, operation, reference, *args):
        self.calls.append((operation, reference) + args)
        if self.vas_error:
            raise self.vas_error
        return self.vas_result

    def buy_airtime(self, reference, network, phone, amount):
        return self._vas("buy_airtime", reference, network, phone, amount)

    def buy_data(self, reference, network, phone, plan_id):
        return self._vas("buy_data", reference, network, phone, plan_id)

    def pay_bill(self, reference, disco, meter_type, meter_number, amount):
        return self._vas("pay_bill", reference, disco, meter_type, meter_number, amount)

    def create_virtual_account(self, reference, profile):
        self.calls.append(("create_virtual_account", reference, profile))
        if self.account_error:
            raise self.account_error
        return VirtualAccountDetails("9012345678", "MiiMii/Ada Obi", "BellBank", "000023")

    def get_status(self, reference, category="transfer"):
        self.calls.append(("get_status", reference, category))
        if self.status_error:
            raise self.status_error
        return self.status_result

    def breakers(self):
        return {"bellbank": {"state": "closed", "failures": 0}, "bilal": {"state": "closed", "failures": 0}}

    def called(self, operation):
        return [call for call in self.calls if call[0] == operation]


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'test.db'}")
    database.init_schema()
    return database


@pytest.fixture
def settings():
    return Settings(
        whatsapp_token="token",
        phone_number_id="1234",
        verify_token="verify-me",
        flow_ids={"onboarding": "flow-onb", "login": "flow-login", "data_purchase": "flow-data"},
        database_url="sqlite:///:memory:",
    )


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ctx(db, settings, platform, gateway, clock):
    sessions = SessionStore(DatabaseKVBackend(db), clock=clock)
    notifier = NotificationEmitter(platform, db)
    plans = DataPlanCatalog(db)
    plans.seed()
    return AppContext(
        settings=settings,
        db=db,
        users=UserRepository(db, clock),
        sessions=sessions,
        flow_tokens=FlowTokenService(sessions),
        wallet=WalletService(db, settings.timezone, settings.daily_limit, clock=clock),
        pins=PinService(db, clock),
        gateway=gateway,
        notifier=notifier,
        receipts=ReceiptService(notifier),
        classifier=RuleBasedClassifier(),
        plans=plans,
        activity=ActivityLog(db),
        clock=clock,
    )


@pytest.fixture
def user(ctx):
    """An onboarded user with PIN 1234 and ₦20,000 available."""
    user, _ = ctx.users.get_or_create(PHONE, "Ada")
    ctx.users.update(user, first_name="Ada", last_name="Obi", onboarding_step=OnboardingStep.COMPLETED)
    ctx.pins.set_pin(user, "1234")
    ctx.wallet.create_wallet(user.id)
    ctx.wallet.credit(user.id, Decimal("20000"), "FUND_seed")
    return user


_message_ids = itertools.count(1)


def text_event(body, phone=PHONE, message_id=None):
    return TextMessage(
        message_id=message_id or f"wamid.in.{next(_message_ids)}",
        phone=phone,
        timestamp=1714557600,
        body=body,
    )
