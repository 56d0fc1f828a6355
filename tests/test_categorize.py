import json

import pytest

from conftest import FakeProvider, failing
from errors import ValidationError
from keyword_categories import KEYWORD_CATEGORIES, categorize_by_keywords
from routes import categorize


@pytest.fixture
def chain(monkeypatch):
    providers = []
    monkeypatch.setattr(categorize, "build_chain", lambda task: tuple(providers))
    return providers


def _call(principal, **body):
    resp = categorize.handle_categorize(principal, body)
    return resp["statusCode"], json.loads(resp["body"])


def test_keyword_hit_short_circuits_model(principal, chain):
    provider = FakeProvider("openai", reply='{"category": "other"}')
    chain.append(provider)

    status, body = _call(principal, description="UBER *TRIP 12.50")

    assert status == 200
    assert body == {"category": "transport", "subcategory": "taxi", "confidence": 0.95,
                    "keywords": ["uber"], "ai_used": False}
    assert provider.calls == 0


def test_highest_confidence_keyword_wins_across_merchant_and_description():
    result = categorize_by_keywords("Paiement burger", merchant_name="McDo Châtelet")
    assert result["subcategory"] == "fast_food"
    assert result["keywords"] == ["mcdo"]


def test_accents_are_stripped_before_lookup():
    assert categorize_by_keywords("Supermarché du coin")["keywords"] == ["supermarche"]


def test_no_match_defaults_depend_on_amount():
    assert categorize_by_keywords("xyz", amount=120.0)["category"] == "income"
    assert categorize_by_keywords("xyz", amount=-3)["category"] == "other"
    assert categorize_by_keywords("xyz")["confidence"] == 0.3


def test_keyword_table_is_read_only():
    with pytest.raises(TypeError):
        KEYWORD_CATEGORIES["new"] = {}


def test_low_confidence_consults_model(principal, chain):
    chain.append(FakeProvider("openai", reply='{"category": "health", "subcategory": "dental", '
                                              '"confidence": 0.88, "keywords": ["dentiste"]}'))

    status, body = _call(principal, description="Cabinet dentiste Dr Martin", amount=-60)

    assert status == 200
    assert body == {"category": "health", "subcategory": "dental", "confidence": 0.88,
                    "keywords": ["dentiste"], "ai_used": True}


def test_virement_is_below_threshold_and_goes_to_model(principal, chain):
    provider = FakeProvider("openai", reply='{"category": "income"}')
    chain.append(provider)

    _, body = _call(principal, description="VIREMENT RECU")

    assert provider.calls == 1
    assert body["ai_used"] is True
    assert body["subcategory"] == "unknown"
    assert body["confidence"] == 0.7


def test_model_category_outside_enum_is_coerced(principal, chain):
    chain.append(FakeProvider("openai", reply='{"category": "pets", "confidence": 0.9}'))
    _, body = _call(principal, description="animalerie")
    assert body["category"] == "other"


def test_model_failure_falls_back_to_keyword_result(principal, chain):
    chain.append(failing("openai"))
    _, body = _call(principal, description="virement partiel", amount=-500)
    assert body["ai_used"] is False


def test_malformed_model_output_falls_back(principal, chain):
    chain.append(FakeProvider("openai", reply="I think this is food"))
    _, body = _call(principal, description="random shop", amount=-5)
    assert body == {"category": "other", "subcategory": "unknown", "confidence": 0.3,
                    "keywords": [], "ai_used": False}


def test_no_configured_provider_falls_back(principal, chain):
    chain.append(FakeProvider("openai", configured=False))
    _, body = _call(principal, description="random shop", amount=10)
    assert body["category"] == "income"
    assert body["ai_used"] is False


def test_missing_description_is_rejected(principal, chain):
    with pytest.raises(ValidationError):
        categorize.handle_categorize(principal, {"merchant_name": "Lidl"})
