"""
Domain models for MiiMii
========================
Plain dataclasses mapped to and from database rows. Money is held as
Decimal naira and stored as text; timestamps are timezone-aware UTC and
stored as ISO-8601 strings so they compare correctly as text.
"""

import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional

CONVERSATION_TTL = timedelta(minutes=30)
PIN_PROMPT_TTL = timedelta(minutes=10)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_naira(value: Any) -> str:
    amount = money(value)
    if amount == amount.to_integral_value():
        return f"₦{amount:,.0f}"
    return f"₦{amount:,.2f}"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    return json.loads(value)


# ============================================================================
# ENUMS
# ============================================================================

class KycStatus(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class OnboardingStep(str, Enum):
    INITIAL = "initial"
    GREETING = "greeting"
    KYC_COLLECTION = "kyc_collection"
    KYC_VERIFYING = "kyc_verifying"
    PIN_SETUP = "pin_setup"
    ACCOUNT_PROVISIONING = "account_provisioning"
    COMPLETED = "completed"


class WalletState(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FROZEN = "frozen"


class TransactionType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class TransactionStatus(str, Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"

    def can_become(self, target: "TransactionStatus") -> bool:
        return target in _STATUS_EDGES[self]


_STATUS_EDGES = {
    TransactionStatus.INITIATED: {
        TransactionStatus.PENDING, TransactionStatus.COMPLETED, TransactionStatus.FAILED,
    },
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.FAILED: {TransactionStatus.REVERSED},
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.REVERSED: set(),
}


class Category(str, Enum):
    TRANSFER = "transfer"
    AIRTIME = "airtime"
    DATA = "data"
    BILL = "bill"
    FEE = "fee"
    REVERSAL = "reversal"
    FUNDING = "funding"
    INTEREST = "interest"


class FlowType(str, Enum):
    ONBOARDING = "onboarding"
    LOGIN = "login"
    DATA_PURCHASE = "data_purchase"


class Intent(str, Enum):
    ONBOARDING = "onboarding"
    BALANCE = "balance"
    TRANSFER = "transfer"
    AIRTIME = "airtime"
    DATA = "data"
    BILLS = "bills"
    HELP = "help"
    MENU = "menu"
    ACCOUNT_DETAILS = "account_details"
    UNKNOWN = "unknown"


# ============================================================================
# CONVERSATION STATE
# ============================================================================

@dataclass
class ConversationState:
    """The single multi-turn conversation a user may have open."""
    intent: str
    awaiting_input: str
    context: str
    step: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=lambda: utcnow() + CONVERSATION_TTL)

    @classmethod
    def start(cls, intent: str, awaiting_input: str, context: str, data: Dict[str, Any] = None,
              step: int = 0, now: datetime = None, ttl: timedelta = None) -> "ConversationState":
        now = now or utcnow()
        ttl = ttl or (PIN_PROMPT_TTL if awaiting_input == "pin" else CONVERSATION_TTL)
        return cls(intent=intent, awaiting_input=awaiting_input, context=context, step=step,
                   data=dict(data or {}), created_at=now, expires_at=now + ttl)

    def advance(self, now: datetime = None, ttl: timedelta = None, **changes) -> "ConversationState":
        """Copy with the given fields changed; any change renews expires_at."""
        now = now or utcnow()
        values = asdict(self)
        values.update(changes)
        if ttl is None:
            ttl = PIN_PROMPT_TTL if values["awaiting_input"] == "pin" else CONVERSATION_TTL
        values["expires_at"] = now + ttl
        return ConversationState(**values)

    def is_expired(self, now: datetime = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "awaitingInput": self.awaiting_input,
            "context": self.context,
            "step": self.step,
            "data": self.data,
            "createdAt": _ts(self.created_at),
            "expiresAt": _ts(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        return cls(
            intent=data["intent"],
            awaiting_input=data.get("awaitingInput", ""),
            context=data.get("context", ""),
            step=int(data.get("step", 0)),
            data=data.get("data") or {},
            created_at=_parse_ts(data.get("createdAt")) or utcnow(),
            expires_at=_parse_ts(data.get("expiresAt")) or utcnow(),
        )


# ============================================================================
# USER
# ============================================================================

@dataclass
class User:
    phone: str
    id: str = field(default_factory=new_id)
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    kyc_status: KycStatus = KycStatus.UNVERIFIED
    onboarding_step: OnboardingStep = OnboardingStep.INITIAL
    kyc_data: Dict[str, Any] = field(default_factory=dict)
    pin_hash: Optional[str] = None
    pin_failures: int = 0
    pin_locked_until: Optional[datetime] = None
    pin_failed_at: Optional[datetime] = None
    conversation: Optional[ConversationState] = None
    disabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_onboarded(self) -> bool:
        return self.onboarding_step == OnboardingStep.COMPLETED

    @property
    def greeting_name(self) -> str:
        return self.first_name or self.display_name or "there"

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phone": self.phone,
            "display_name": self.display_name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "date_of_birth": self.date_of_birth,
            "kyc_status": self.kyc_status.value,
            "onboarding_step": self.onboarding_step.value,
            "kyc_data": json.dumps(self.kyc_data),
            "pin_hash": self.pin_hash,
            "pin_failures": self.pin_failures,
            "pin_locked_until": _ts(self.pin_locked_until),
            "pin_failed_at": _ts(self.pin_failed_at),
            "conversation": json.dumps(self.conversation.to_dict()) if self.conversation else None,
            "disabled": 1 if self.disabled else 0,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        conversation = _json(row.get("conversation"))
        return cls(
            id=row["id"],
            phone=row["phone"],
            display_name=row.get("display_name") or "",
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            date_of_birth=row.get("date_of_birth") or "",
            kyc_status=KycStatus(row.get("kyc_status") or "unverified"),
            onboarding_step=OnboardingStep(row.get("onboarding_step") or "initial"),
            kyc_data=_json(row.get("kyc_data")),
            pin_hash=row.get("pin_hash"),
            pin_failures=int(row.get("pin_failures") or 0),
            pin_locked_until=_parse_ts(row.get("pin_locked_until")),
            pin_failed_at=_parse_ts(row.get("pin_failed_at")),
            conversation=ConversationState.from_dict(conversation) if conversation else None,
            disabled=bool(row.get("disabled")),
            created_at=_parse_ts(row.get("created_at")) or utcnow(),
            updated_at=_parse_ts(row.get("updated_at")) or utcnow(),
        )


# ============================================================================
# WALLET & LEDGER
# ============================================================================

@dataclass
class VirtualAccount:
    account_number: str
    bank_name: str
    account_name: str
    bank_code: str = ""


@dataclass
class Wallet:
    user_id: str
    available: Decimal = Decimal("0.00")
    pending: Decimal = Decimal("0.00")
    daily_spent: Decimal = Decimal("0.00")
    daily_spent_date: str = ""
    daily_limit: Decimal = Decimal("5000000.00")
    state: WalletState = WalletState.PROVISIONING
    virtual_account: Optional[VirtualAccount] = None
    provisioning_attempts: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        account = self.virtual_account
        return {
            "user_id": self.user_id,
            "available": str(money(self.available)),
            "pending": str(money(self.pending)),
            "daily_spent": str(money(self.daily_spent)),
            "daily_spent_date": self.daily_spent_date,
            "daily_limit": str(money(self.daily_limit)),
            "state": self.state.value,
            "account_number": account.account_number if account else None,
            "bank_name": account.bank_name if account else None,
            "account_name": account.account_name if account else None,
            "bank_code": account.bank_code if account else None,
            "provisioning_attempts": self.provisioning_attempts,
            "updated_at": _ts(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Wallet":
        account = None
        if row.get("account_number"):
            account = VirtualAccount(
                account_number=row["account_number"],
                bank_name=row.get("bank_name") or "",
                account_name=row.get("account_name") or "",
                bank_code=row.get("bank_code") or "",
            )
        return cls(
            user_id=row["user_id"],
            available=money(row.get("available") or 0),
            pending=money(row.get("pending") or 0),
            daily_spent=money(row.get("daily_spent") or 0),
            daily_spent_date=row.get("daily_spent_date") or "",
            daily_limit=money(row.get("daily_limit") or 0),
            state=WalletState(row.get("state") or "provisioning"),
            virtual_account=account,
            provisioning_attempts=int(row.get("provisioning_attempts") or 0),
            updated_at=_parse_ts(row.get("updated_at")) or utcnow(),
        )


@dataclass
class Transaction:
    reference: str
    user_id: str
    type: TransactionType
    category: Category
    amount: Decimal
    fee: Decimal = Decimal("0.00")
    total_amount: Optional[Decimal] = None
    status: TransactionStatus = TransactionStatus.INITIATED
    description: str = ""
    provider_reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.amount = money(self.amount)
        self.fee = money(self.fee)
        if self.total_amount is None:
            self.total_amount = self.amount + self.fee
        self.total_amount = money(self.total_amount)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reference": self.reference,
            "user_id": self.user_id,
            "type": self.type.value,
            "category": self.category.value,
            "amount": str(self.amount),
            "fee": str(self.fee),
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "description": self.description,
            "provider_reference": self.provider_reference,
            "metadata": json.dumps(self.metadata, default=str),
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        return cls(
            id=row["id"],
            reference=row["reference"],
            user_id=row["user_id"],
            type=TransactionType(row["type"]),
            category=Category(row["category"]),
            amount=money(row["amount"]),
            fee=money(row.get("fee") or 0),
            total_amount=money(row["total_amount"]),
            status=TransactionStatus(row["status"]),
            description=row.get("description") or "",
            provider_reference=row.get("provider_reference"),
            metadata=_json(row.get("metadata")),
            created_at=_parse_ts(row.get("created_at")) or utcnow(),
            updated_at=_parse_ts(row.get("updated_at")) or utcnow(),
        )


@dataclass
class Hold:
    user_id: str
    amount: Decimal
    reference: str
    status: str = "active"
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": str(money(self.amount)),
            "reference": self.reference,
            "status": self.status,
            "created_at": _ts(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Hold":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            amount=money(row["amount"]),
            reference=row["reference"],
            status=row["status"],
            created_at=_parse_ts(row.get("created_at")) or utcnow(),
        )


@dataclass
class WalletSummary:
    balance: Decimal
    available: Decimal
    pending: Decimal
    daily_limit: Decimal
    daily_spent: Decimal
    daily_remaining: Decimal
    virtual_account: Optional[VirtualAccount]
    state: WalletState


# ============================================================================
# FLOWS & CATALOG
# ============================================================================

@dataclass
class FlowSession:
    flow_token: str
    user_id: str
    flow_type: str
    phone: str
    initial_screen: str = ""
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=lambda: utcnow() + CONVERSATION_TTL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flowToken": self.flow_token,
            "userId": self.user_id,
            "flowType": self.flow_type,
            "phone": self.phone,
            "initialScreen": self.initial_screen,
            "createdAt": _ts(self.created_at),
            "expiresAt": _ts(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowSession":
        return cls(
            flow_token=data["flowToken"],
            user_id=data["userId"],
            flow_type=data["flowType"],
            phone=data["phone"],
            initial_screen=data.get("initialScreen") or "",
            created_at=_parse_ts(data.get("createdAt")) or utcnow(),
            expires_at=_parse_ts(data.get("expiresAt")) or utcnow(),
        )


@dataclass
class DataPlan:
    id: int
    network: str
    plan_type: str
    data_size: str
    validity: str
    selling_price: Decimal
    network_code: int
    api_plan_id: int
    active: bool = True

    @property
    def title(self) -> str:
        return f"{self.network} {self.data_size} {self.plan_type}"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DataPlan":
        return cls(
            id=int(row["id"]),
            network=row["network"],
            plan_type=row["plan_type"],
            data_size=row["data_size"],
            validity=row["validity"],
            selling_price=money(row["selling_price"]),
            network_code=int(row["network_code"]),
            api_plan_id=int(row["api_plan_id"]),
            active=bool(row.get("active", 1)),
        )
