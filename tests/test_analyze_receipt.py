import json
from decimal import Decimal

import pytest

from conftest import FakeProvider, failing
from errors import ConfigurationError, PersistenceError, UpstreamError, ValidationError
from inference import MalformedOutput, TaskKind
from routes import analyze_receipt
from transactions import ExtractedTransaction, build_transaction

RECEIPT_JSON = json.dumps({
    "amount": -23.4, "merchant": "Monoprix", "date": "2025-03-14", "category": "food",
    "subcategory": "groceries", "description": "Courses de la semaine au Monoprix du quartier latin",
    "currency": "eur", "items": [{"name": "Pain", "amount": 1.2, "quantity": 2}], "confidence": 0.93,
})


@pytest.fixture
def chains(monkeypatch):
    chains = {}
    monkeypatch.setattr(analyze_receipt, "build_chain", lambda task: tuple(chains.get(task, ())))
    return chains


def _call(principal, store, **body):
    body.setdefault("userId", principal.user_id)
    resp = analyze_receipt.handle_analyze_receipt(principal, body, store=store)
    return resp["statusCode"], json.loads(resp["body"])


def test_scan_is_extracted_and_persisted(principal, store, chains):
    chains[TaskKind.EXTRACT_RECEIPT] = [FakeProvider("openai", reply=f"```json\n{RECEIPT_JSON}\n```")]

    status, body = _call(principal, store, imageUrl="https://cdn.example.com/r.jpg")

    assert status == 200
    assert body["amount"] == -23.4
    assert body["currency"] == "EUR"
    assert len(body["description"]) == 50
    row = store.tables["transactions"][0]
    assert row["user_id"] == "user-1"
    assert row["amount"] == Decimal("-23.4")
    assert row["source"] == "scan"
    assert row["scan_image_url"] == "https://cdn.example.com/r.jpg"
    assert row["ai_confidence"] == 0.93
    assert row["metadata"]["items"] == [{"name": "Pain", "amount": 1.2, "quantity": 2.0}]
    assert row["metadata"]["raw_analysis"]["merchant"] == "Monoprix"


def test_scan_falls_back_to_secondary_provider(principal, store, chains):
    gemini = FakeProvider("gemini", reply=RECEIPT_JSON)
    chains[TaskKind.EXTRACT_RECEIPT] = [failing("openai", 500), gemini]

    status, _ = _call(principal, store, imageBase64="aGVsbG8=")

    assert status == 200
    assert gemini.requests[0].image_base64 == "aGVsbG8="


def test_voice_transcript_uses_voice_chain(principal, store, chains):
    provider = FakeProvider("openai", reply='{"amount": -25, "merchant": "McDonald\'s", "category": "food", '
                                            '"description": "Repas McDo", "confidence": 0.95}')
    chains[TaskKind.EXTRACT_VOICE] = [provider]

    status, body = _call(principal, store, transcript="J'ai dépensé 25 euros au McDo")

    assert status == 200
    assert provider.requests[0].json_mode is True
    assert "25 euros au McDo" in provider.requests[0].prompt
    assert store.tables["transactions"][0]["source"] == "voice"
    assert store.tables["transactions"][0]["scan_image_url"] is None


@pytest.mark.parametrize("tag", ["image_not_clear", "not_a_receipt"])
def test_declared_rejection_is_422_and_nothing_persisted(principal, store, chains, tag):
    chains[TaskKind.EXTRACT_RECEIPT] = [FakeProvider("openai", reply=json.dumps({"error": tag}))]

    status, body = _call(principal, store, imageUrl="https://cdn.example.com/blurry.jpg")

    assert status == 422
    assert body == {"error": tag}
    assert "transactions" not in store.tables


def test_missing_amount_is_malformed(principal, store, chains):
    chains[TaskKind.EXTRACT_RECEIPT] = [FakeProvider("openai", reply='{"merchant": "Fnac"}')]
    status, body = _call(principal, store, imageUrl="https://x/r.jpg")
    assert (status, body) == (422, {"error": "missing_amount"})


def test_unparseable_output_is_422_invalid_json(principal, store, chains):
    chains[TaskKind.EXTRACT_RECEIPT] = [FakeProvider("openai", reply="I can't read that")]
    status, body = _call(principal, store, imageUrl="https://x/r.jpg")
    assert (status, body) == (422, {"error": "invalid_json"})


def test_all_providers_failing_raises_upstream_error(principal, store, chains):
    chains[TaskKind.EXTRACT_RECEIPT] = [failing("openai"), failing("gemini", 503)]
    with pytest.raises(UpstreamError) as exc_info:
        _call(principal, store, imageUrl="https://x/r.jpg")
    assert exc_info.value.status_code == 502
    assert exc_info.value.details["provider"] == "gemini"


def test_no_credentials_is_configuration_error(principal, store, chains):
    chains[TaskKind.EXTRACT_RECEIPT] = [FakeProvider("openai", configured=False)]
    with pytest.raises(ConfigurationError):
        _call(principal, store, imageUrl="https://x/r.jpg")


def test_insert_failure_surfaces_persistence_error(principal, store, chains):
    chains[TaskKind.EXTRACT_RECEIPT] = [FakeProvider("openai", reply=RECEIPT_JSON)]
    store.fail_on.add(("insert", "transactions"))
    with pytest.raises(PersistenceError):
        _call(principal, store, imageUrl="https://x/r.jpg")


def test_user_mismatch_is_403(principal, store, chains):
    with pytest.raises(ValidationError) as exc_info:
        _call(principal, store, userId="someone-else", imageUrl="https://x/r.jpg")
    assert exc_info.value.status_code == 403


def test_missing_input_is_400(principal, store, chains):
    with pytest.raises(ValidationError) as exc_info:
        _call(principal, store)
    assert exc_info.value.status_code == 400


def test_build_transaction_coerces_fields():
    tx = build_transaction({"amount": "12,50", "category": "Pets", "currency": "dollars",
                            "confidence": 7, "date": "not a date"})
    assert isinstance(tx, ExtractedTransaction)
    assert tx.amount == Decimal("12.50")
    assert tx.category == "other"
    assert tx.currency == "EUR"
    assert tx.confidence == 1.0
    assert tx.date[:4].isdigit()


@pytest.mark.parametrize("amount", [None, "abc", True, "NaN"])
def test_build_transaction_rejects_unusable_amount(amount):
    result = build_transaction({"amount": amount})
    assert isinstance(result, MalformedOutput)
    assert result.reason == "missing_amount"
