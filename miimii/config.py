"""
Configuration for MiiMii
========================
Reads the process environment (and a local .env file) once into an
immutable Settings object that the application context carries around.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

BELLBANK_SANDBOX_URL = "https://sandbox-baas-api.bellmfb.com"
BELLBANK_PRODUCTION_URL = "https://baas-api.bellmfb.com"
BILAL_DEFAULT_URL = "https://legitdataway.com/api"


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    # WhatsApp Cloud API
    whatsapp_token: str = ""
    phone_number_id: str = ""
    api_version: str = "v20.0"
    verify_token: str = ""
    app_secret: str = ""

    # Flows
    flow_ids: Dict[str, str] = field(default_factory=dict)
    flow_private_keys: Tuple[str, ...] = ()
    flow_key_passphrase: str = ""

    # Providers
    bellbank_base_url: str = BELLBANK_SANDBOX_URL
    bellbank_consumer_key: str = ""
    bellbank_consumer_secret: str = ""
    bilal_base_url: str = BILAL_DEFAULT_URL
    bilal_username: str = ""
    bilal_password: str = ""

    # Storage
    database_url: str = "sqlite:///miimii.db"
    redis_url: str = ""

    # Intent extraction
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # Operations
    ops_phone: str = ""
    default_country_code: str = "234"
    timezone: str = "Africa/Lagos"
    worker_threads: int = 8
    turn_timeout_seconds: float = 30.0
    daily_limit: int = 5_000_000
    data_service_fee: int = 0
    require_login_session: bool = False
    log_level: str = "INFO"
    log_file: str = "miimii.log"

    @property
    def graph_url(self) -> str:
        return f"https://graph.facebook.com/{self.api_version}"

    def flow_id(self, flow_type: str) -> str:
        return self.flow_ids.get(flow_type, "")

    def missing(self) -> List[str]:
        """Names of required settings that are empty."""
        required = {
            "WHATSAPP_ACCESS_TOKEN": self.whatsapp_token,
            "WHATSAPP_PHONE_NUMBER_ID": self.phone_number_id,
            "WEBHOOK_VERIFY_TOKEN": self.verify_token,
        }
        return [name for name, value in required.items() if not value]


def load_settings() -> Settings:
    settings = Settings(
        whatsapp_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        api_version=os.getenv("WHATSAPP_API_VERSION", "v20.0"),
        verify_token=os.getenv("WEBHOOK_VERIFY_TOKEN", ""),
        app_secret=os.getenv("META_APP_SECRET", ""),
        flow_ids={
            "onboarding": os.getenv("FLOW_ONBOARDING_ID", ""),
            "login": os.getenv("FLOW_LOGIN_ID", ""),
            "data_purchase": os.getenv("FLOW_DATA_PURCHASE_ID", ""),
        },
        flow_private_keys=_split(os.getenv("FLOW_PRIVATE_KEYS", "")),
        flow_key_passphrase=os.getenv("FLOW_PRIVATE_KEY_PASSPHRASE", ""),
        bellbank_base_url=os.getenv("BELLBANK_BASE_URL", BELLBANK_SANDBOX_URL),
        bellbank_consumer_key=os.getenv("BELLBANK_CONSUMER_KEY", ""),
        bellbank_consumer_secret=os.getenv("BELLBANK_CONSUMER_SECRET", ""),
        bilal_base_url=os.getenv("BILAL_BASE_URL", BILAL_DEFAULT_URL),
        bilal_username=os.getenv("BILAL_USERNAME", ""),
        bilal_password=os.getenv("BILAL_PASSWORD", ""),
        database_url=os.getenv("DATABASE_URL", "sqlite:///miimii.db"),
        redis_url=os.getenv("REDIS_URL", ""),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        ops_phone=os.getenv("OPS_PHONE", ""),
        default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "234"),
        timezone=os.getenv("TIMEZONE", "Africa/Lagos"),
        worker_threads=int(os.getenv("WORKER_THREADS", "8")),
        turn_timeout_seconds=float(os.getenv("TURN_TIMEOUT_SECONDS", "30")),
        daily_limit=int(os.getenv("DAILY_LIMIT", "5000000")),
        data_service_fee=int(os.getenv("DATA_SERVICE_FEE", "0")),
        require_login_session=_flag("REQUIRE_LOGIN_SESSION"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE", "miimii.log"),
    )

    missing = settings.missing()
    if missing:
        logger.warning(f"Missing configuration: {', '.join(missing)}")
    return settings
