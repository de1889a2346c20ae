import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from miimii.intents import FallbackClassifier, LLMClassifier, RuleBasedClassifier, extract_entities, parse_amount
from miimii.models import Intent


def llm_session(content=None, error=None):
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
    else:
        response = MagicMock()
        response.json.return_value = {"choices": [{"message": {"content": content}}]}
        session.post.return_value = response
    return session


class TestEntities:

    @pytest.mark.parametrize("text,amount", [("5k", 5000), ("₦2,500", 2500), ("send 1.5k", 1500),
                                             ("N300", 300), ("nothing here", None)])
    def test_amounts(self, text, amount):
        expected = Decimal(amount) if amount is not None else None
        assert parse_amount(text) == expected

    def test_transfer_entities(self):
        entities = extract_entities("Send 5k to 0030826783 bellbank")
        assert entities["amount"] == Decimal("5000")
        assert entities["account_number"] == "0030826783"
        assert entities["bank_code"] == "000023"

    def test_phone_is_not_read_as_account(self):
        entities = extract_entities("buy 500 airtime for 08031234567 mtn")
        assert entities["phone"] == "+2348031234567"
        assert "account_number" not in entities
        assert entities["amount"] == Decimal("500")
        assert entities["network"] == "MTN"

    def test_bill_entities(self):
        entities = extract_entities("pay 5000 ikeja prepaid meter 45012345678")
        assert entities["meter_number"] == "45012345678"
        assert entities["disco"] == "IKEJA"
        assert entities["meter_type"] == "prepaid"


class TestRuleBasedClassifier:

    def test_transfer(self):
        result = RuleBasedClassifier().classify("Send 5k to 0030826783 bellbank")
        assert result.intent == Intent.TRANSFER
        assert result.confidence == 0.95
        assert result.is_confident

    def test_button_ids_are_exact(self):
        assert RuleBasedClassifier().classify("check_balance").confidence == 1.0

    def test_greeting_depends_on_onboarding(self):
        classifier = RuleBasedClassifier()
        assert classifier.classify("Hello", onboarded=True).intent == Intent.MENU
        assert classifier.classify("Hello", onboarded=False).intent == Intent.ONBOARDING

    def test_verbless_transfer(self):
        result = RuleBasedClassifier().classify("2000 0123456789 gtb")
        assert result.intent == Intent.TRANSFER
        assert result.entities["bank_code"] == "058"

    def test_gibberish_is_not_confident(self):
        result = RuleBasedClassifier().classify("asdfgh")
        assert result.intent == Intent.UNKNOWN
        assert not result.is_confident


class TestLLMClassifier:

    def test_parses_fenced_json(self):
        content = "```json\n" + json.dumps({
            "intent": "transfer", "confidence": 0.9,
            "entities": {"amount": 5000, "account_number": "0123456789", "bank_name": "GTBank", "phone": None},
        }) + "\n```"
        result = LLMClassifier("key", session=llm_session(content)).classify("send 5k to 0123456789 gtbank")
        assert result.intent == Intent.TRANSFER
        assert result.entities["amount"] == Decimal("5000")
        assert result.entities["bank_code"] == "058"
        assert "phone" not in result.entities

    def test_fallback_on_network_error(self):
        primary = LLMClassifier("key", session=llm_session(error=requests.ConnectionError("down")))
        result = FallbackClassifier(primary, RuleBasedClassifier()).classify("what's my balance")
        assert result.intent == Intent.BALANCE

    def test_fallback_on_garbage(self):
        primary = LLMClassifier("key", session=llm_session("I think it's a transfer"))
        result = FallbackClassifier(primary, RuleBasedClassifier()).classify("my balance please")
        assert result.intent == Intent.BALANCE

    def test_null_fields_are_tolerated(self):
        content = json.dumps({"intent": None, "confidence": None, "entities": ["amount"]})
        result = LLMClassifier("key", session=llm_session(content)).classify("hello there")
        assert result.intent == Intent.UNKNOWN
        assert result.confidence == 0.0
        assert result.entities == {}

    @pytest.mark.parametrize("content", [
        json.dumps({"intent": "balance", "confidence": "very"}),
        json.dumps(["balance"]),
    ])
    def test_fallback_on_malformed_fields(self, content):
        primary = LLMClassifier("key", session=llm_session(content))
        result = FallbackClassifier(primary, RuleBasedClassifier()).classify("my balance please")
        assert result.intent == Intent.BALANCE

    def test_button_ids_skip_the_model(self):
        session = llm_session("{}")
        FallbackClassifier(LLMClassifier("key", session=session), RuleBasedClassifier()).classify("buy_data")
        session.post.assert_not_called()

    def test_rule_entities_fill_gaps(self):
        content = json.dumps({"intent": "transfer", "confidence": 0.97, "entities": {"amount": 5000}})
        primary = LLMClassifier("key", session=llm_session(content))
        result = FallbackClassifier(primary, RuleBasedClassifier()).classify("send 5k to 0030826783 bellbank")
        assert result.confidence == 0.97
        assert result.entities["account_number"] == "0030826783"
        assert result.entities["bank_code"] == "000023"
