"""
Application context
===================
The collaborators every handler needs, wired once at startup and passed
explicitly. Tests build the same object around a temporary database and
fake platform/provider clients.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from miimii.activity import ActivityLog
from miimii.config import Settings
from miimii.data_plans import DataPlanCatalog
from miimii.database import Database
from miimii.flow_tokens import FlowTokenService
from miimii.intents import IntentClassifier
from miimii.models import utcnow
from miimii.notifications import NotificationEmitter
from miimii.pin import PinService
from miimii.providers.gateway import ProviderGateway
from miimii.receipts import ReceiptService
from miimii.session_store import SessionStore
from miimii.users import UserRepository
from miimii.wallet import WalletService


@dataclass
class AppContext:
    settings: Settings
    db: Database
    users: UserRepository
    sessions: SessionStore
    flow_tokens: FlowTokenService
    wallet: WalletService
    pins: PinService
    gateway: ProviderGateway
    notifier: NotificationEmitter
    receipts: ReceiptService
    classifier: IntentClassifier
    plans: DataPlanCatalog
    activity: ActivityLog
    provisioner: Any = None
    clock: Callable[[], datetime] = field(default=utcnow)
