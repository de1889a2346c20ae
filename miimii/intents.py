"""
Intent Classification for MiiMii
================================
Maps free text, button ids and list ids to a closed set of intents with a
confidence score and typed entities.

- RuleBasedClassifier: keyword and regex extraction, always available
- LLMClassifier: OpenAI chat completion returning JSON
- FallbackClassifier: tries the LLM first and falls back to the rules
"""

import re
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

from miimii.errors import InvalidPhoneNumber
from miimii.models import Intent
from miimii.phone import normalize
from miimii.providers.bilal import DISCOS, NETWORKS

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.5


@dataclass
class IntentClassification:
    intent: Intent
    confidence: float
    entities: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_confident(self) -> bool:
        return self.confidence >= CONFIDENCE_THRESHOLD


class IntentClassifier(ABC):

    @abstractmethod
    def classify(self, text: str, onboarded: bool = True) -> IntentClassification:
        ...


# ============================================================================
# DICTIONARIES
# ============================================================================

BANK_HINTS = {
    "zenith": ("057", "Zenith Bank"),
    "gtbank": ("058", "GTBank"),
    "gtb": ("058", "GTBank"),
    "guaranty trust": ("058", "GTBank"),
    "access": ("044", "Access Bank"),
    "uba": ("033", "UBA"),
    "fidelity": ("070", "Fidelity Bank"),
    "wema": ("035", "Wema Bank"),
    "union": ("032", "Union Bank"),
    "fcmb": ("214", "FCMB"),
    "first bank": ("011", "First Bank"),
    "firstbank": ("011", "First Bank"),
    "fbn": ("011", "First Bank"),
    "keystone": ("082", "Keystone Bank"),
    "stanbic": ("221", "Stanbic IBTC"),
    "sterling": ("232", "Sterling Bank"),
    "bellbank": ("000023", "BellBank"),
    "bell bank": ("000023", "BellBank"),
    "bellmonie": ("000023", "BellBank"),
    "bells": ("000023", "BellBank"),
    "bell": ("000023", "BellBank"),
    "test bank": ("010", "Test Bank"),
    "testbank": ("010", "Test Bank"),
}

# Canonical ids carried by our own buttons and list rows.
ACTION_IDS = {
    "menu": Intent.MENU,
    "help": Intent.HELP,
    "check_balance": Intent.BALANCE,
    "balance": Intent.BALANCE,
    "send_money": Intent.TRANSFER,
    "transfer": Intent.TRANSFER,
    "buy_airtime": Intent.AIRTIME,
    "airtime": Intent.AIRTIME,
    "buy_data": Intent.DATA,
    "data": Intent.DATA,
    "pay_bills": Intent.BILLS,
    "bills": Intent.BILLS,
    "account_details": Intent.ACCOUNT_DETAILS,
    "complete_onboarding": Intent.ONBOARDING,
    "start_onboarding": Intent.ONBOARDING,
}

_ACCOUNT = re.compile(r"(?<!\d)(\d{10})(?!\d)")
_PHONE = re.compile(r"(?<![\d+])((?:\+?234|0)[789][01]\d{8})(?!\d)")
_METER = re.compile(r"(?<!\d)(\d{11,13})(?!\d)")
_AMOUNT = re.compile(r"(?:₦|ngn|n)?\s*(\d[\d,]*(?:\.\d+)?)\s*(k)?(?![\w])", re.IGNORECASE)

_KEYWORDS = [
    (Intent.BALANCE, re.compile(r"\b(balance|bal|how much (do i|i) have)\b")),
    (Intent.ACCOUNT_DETAILS, re.compile(r"\b(account (details|number|info)|my account|acct details)\b")),
    (Intent.AIRTIME, re.compile(r"\b(airtime|recharge|top ?up|vtu)\b")),
    (Intent.DATA, re.compile(r"\b(data|bundle|mb|gb)\b")),
    (Intent.BILLS, re.compile(r"\b(bills?|electricity|light|nepa|meter|disco|prepaid|postpaid)\b")),
    (Intent.TRANSFER, re.compile(r"\b(send|transfer|pay)\b")),
    (Intent.ONBOARDING, re.compile(r"\b(register|sign ?up|onboard|open (an )?account|get started)\b")),
    (Intent.HELP, re.compile(r"\b(help|support|how (do|does|can))\b")),
    (Intent.MENU, re.compile(r"\b(menu|options|services|start)\b")),
]
_GREETING = re.compile(r"^(hi+|hello|hey|good (morning|afternoon|evening)|howdy|yo|sup)\b")


# ============================================================================
# ENTITY EXTRACTION
# ============================================================================

def parse_amount(text: str) -> Optional[Decimal]:
    match = _AMOUNT.search(text)
    if not match:
        return None
    try:
        value = Decimal(match.group(1).replace(",", ""))
    except InvalidOperation:
        return None
    if match.group(2):
        value *= 1000
    return value if value > 0 else None


def find_bank(text: str) -> Optional[Dict[str, str]]:
    lowered = text.lower()
    for hint in sorted(BANK_HINTS, key=len, reverse=True):
        if re.search(rf"\b{re.escape(hint)}\b", lowered):
            code, name = BANK_HINTS[hint]
            return {"bank_code": code, "bank_name": name}
    return None


def extract_entities(text: str) -> Dict[str, Any]:
    entities: Dict[str, Any] = {}
    lowered = text.lower()
    remaining = lowered

    phone_match = _PHONE.search(remaining)
    if phone_match:
        try:
            entities["phone"] = normalize(phone_match.group(1))
            remaining = remaining.replace(phone_match.group(1), " ")
        except InvalidPhoneNumber:
            pass

    account_match = _ACCOUNT.search(remaining)
    if account_match:
        entities["account_number"] = account_match.group(1)
        remaining = remaining.replace(account_match.group(1), " ")

    meter_match = _METER.search(remaining)
    if meter_match:
        entities["meter_number"] = meter_match.group(1)
        remaining = remaining.replace(meter_match.group(1), " ")

    amount = parse_amount(remaining)
    if amount is not None:
        entities["amount"] = amount

    bank = find_bank(lowered)
    if bank:
        entities.update(bank)

    for network in NETWORKS:
        if re.search(rf"\b{network.lower()}\b", lowered):
            entities["network"] = network
            break

    for disco in sorted(DISCOS, key=len, reverse=True):
        if re.search(rf"\b{disco.lower()}\b", lowered):
            entities["disco"] = disco
            break

    for meter_type in ("prepaid", "postpaid"):
        if meter_type in lowered:
            entities["meter_type"] = meter_type
            break

    return entities


# ============================================================================
# RULE-BASED CLASSIFIER
# ============================================================================

class RuleBasedClassifier(IntentClassifier):

    def classify(self, text: str, onboarded: bool = True) -> IntentClassification:
        raw = (text or "").strip()
        lowered = raw.lower()
        if not lowered:
            return IntentClassification(Intent.UNKNOWN, 0.0)

        if lowered in ACTION_IDS:
            return IntentClassification(ACTION_IDS[lowered], 1.0)

        if _GREETING.match(lowered):
            intent = Intent.MENU if onboarded else Intent.ONBOARDING
            return IntentClassification(intent, 0.9)

        entities = extract_entities(raw)
        for intent, pattern in _KEYWORDS:
            if pattern.search(lowered):
                return IntentClassification(intent, self._confidence(intent, entities), entities)

        # "5000 to 0123456789 gtb" without a verb still reads as a transfer
        if "account_number" in entities and "amount" in entities:
            return IntentClassification(Intent.TRANSFER, 0.6, entities)

        if not onboarded:
            return IntentClassification(Intent.ONBOARDING, 0.6, entities)
        return IntentClassification(Intent.UNKNOWN, 0.2, entities)

    @staticmethod
    def _confidence(intent: Intent, entities: Dict[str, Any]) -> float:
        required = {
            Intent.TRANSFER: ("amount", "account_number", "bank_code"),
            Intent.AIRTIME: ("amount",),
            Intent.BILLS: ("amount", "meter_number"),
        }.get(intent)
        if not required:
            return 0.85
        found = sum(1 for key in required if key in entities)
        return round(0.7 + 0.25 * found / len(required), 2)


# ============================================================================
# LLM CLASSIFIER
# ============================================================================

SYSTEM_PROMPT = """You classify WhatsApp messages sent to MiiMii, a Nigerian mobile banking assistant.

Return ONLY a JSON object:
{
  "intent": "onboarding|balance|transfer|airtime|data|bills|help|menu|account_details|unknown",
  "confidence": number between 0 and 1,
  "entities": {
    "amount": number or null,          // "5k" means 5000
    "account_number": "10 digits" or null,
    "bank_name": string or null,
    "phone": string or null,
    "network": "MTN|AIRTEL|GLO|9MOBILE" or null,
    "disco": string or null,
    "meter_type": "prepaid|postpaid" or null,
    "meter_number": string or null
  }
}

Extract only what the user explicitly wrote. Do not guess."""


class LLMClassifier(IntentClassifier):

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 10,
                 session: requests.Session = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def classify(self, text: str, onboarded: bool = True) -> IntentClassification:
        response = self.session.post(
            "https://api.openai.com/v1/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"Onboarded: {onboarded}\nMessage: \"{text}\""},
                ],
                "temperature": 0.1,
                "max_tokens": 200,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        content = response.json()["choices"][0]["message"]["content"].strip()
        if content.startswith("```"):
            content = content.split("```")[1]
            if content.startswith("json"):
                content = content[4:]
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")

        intent = Intent(parsed.get("intent") or "unknown")
        confidence = max(0.0, min(1.0, float(parsed.get("confidence") or 0.0)))
        entities = parsed.get("entities")
        if not isinstance(entities, dict):
            entities = {}
        entities = {k: v for k, v in entities.items() if v not in (None, "")}
        return IntentClassification(intent, confidence, self._normalize(entities, text))

    @staticmethod
    def _normalize(entities: Dict[str, Any], text: str) -> Dict[str, Any]:
        if "amount" in entities:
            try:
                entities["amount"] = Decimal(str(entities["amount"]))
            except InvalidOperation:
                entities.pop("amount")
        if "bank_name" in entities and "bank_code" not in entities:
            bank = find_bank(str(entities["bank_name"])) or find_bank(text)
            if bank:
                entities.update(bank)
        if "phone" in entities:
            try:
                entities["phone"] = normalize(str(entities["phone"]))
            except InvalidPhoneNumber:
                entities.pop("phone")
        if "network" in entities:
            entities["network"] = str(entities["network"]).upper()
        return entities


class FallbackClassifier(IntentClassifier):

    def __init__(self, primary: Optional[IntentClassifier], fallback: IntentClassifier):
        self.primary = primary
        self.fallback = fallback

    def classify(self, text: str, onboarded: bool = True) -> IntentClassification:
        rules = self.fallback.classify(text, onboarded)
        # Our own button and list ids never need a model.
        if self.primary is None or rules.confidence >= 1.0:
            return rules
        try:
            result = self.primary.classify(text, onboarded)
        except (requests.RequestException, ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            logger.warning(f"LLM classification failed, using rules: {e}")
            return rules
        if result.confidence < rules.confidence:
            return rules
        # Rules are exact for the shapes they know (10-digit accounts, bank codes).
        merged = dict(result.entities)
        merged.update({k: v for k, v in rules.entities.items() if k not in merged})
        return IntentClassification(result.intent, result.confidence, merged)
