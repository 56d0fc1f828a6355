import json
import logging
import time
from types import SimpleNamespace

import pytest
from jose import jwt

import auth
import config
import lambda_function
from errors import AuthenticationError, ConfigurationError, PersistenceError

SECRET = "jwt-test-secret"


@pytest.fixture
def hs256(monkeypatch):
    monkeypatch.setattr(config, "AUTH_JWT_SECRET", SECRET)
    monkeypatch.setattr(config, "AUTH_JWT_AUDIENCE", "authenticated")
    monkeypatch.setattr(config, "AUTH_JWKS_URL", None)


def _token(sub="user-1", **claims):
    payload = {"sub": sub, "aud": "authenticated", "exp": int(time.time()) + 600, "email": "u@example.com", **claims}
    return jwt.encode(payload, SECRET, algorithm="HS256")


def _event(path, body=None, method="POST", token=None):
    headers = {"authorization": f"Bearer {token}"} if token else {}
    return {"httpMethod": method, "path": path, "headers": headers,
            "body": json.dumps(body) if body is not None else None}


def _context():
    return SimpleNamespace(aws_request_id="req-1")


def test_verify_token_accepts_valid_hs256(hs256):
    principal = auth.verify_token(_token())
    assert principal.user_id == "user-1"
    assert principal.email == "u@example.com"


@pytest.mark.parametrize("token_factory", [
    lambda: _token(exp=int(time.time()) - 10),
    lambda: _token(aud="someone-else"),
    lambda: jwt.encode({"sub": "user-1", "aud": "authenticated"}, "wrong", algorithm="HS256"),
    lambda: "not-a-jwt",
    lambda: "",
])
def test_verify_token_rejects_bad_tokens(hs256, token_factory):
    with pytest.raises(AuthenticationError):
        auth.verify_token(token_factory())


def test_verify_token_without_any_auth_config(monkeypatch):
    monkeypatch.setattr(config, "AUTH_JWT_SECRET", None)
    monkeypatch.setattr(config, "AUTH_JWKS_URL", None)
    with pytest.raises(ConfigurationError):
        auth.verify_token("a.b.c")


def test_options_preflight_is_ok():
    resp = lambda_function.lambda_handler({"httpMethod": "OPTIONS", "path": "/coach-chat"}, _context())
    assert resp["statusCode"] == 200
    assert resp["headers"]["Access-Control-Allow-Origin"] == config.ALLOWED_ORIGIN


def test_unknown_path_is_404():
    assert lambda_function.lambda_handler(_event("/nope", {}), _context())["statusCode"] == 404


def test_missing_token_is_401(hs256):
    resp = lambda_function.lambda_handler(_event("/categorize-transaction", {"description": "x"}), _context())
    assert resp["statusCode"] == 401
    assert json.loads(resp["body"])["code"] == "unauthorized"


def test_authenticated_request_reaches_handler_with_stage_prefix(hs256, monkeypatch):
    seen = {}

    def fake_handler(principal, body):
        seen["user"], seen["body"] = principal.user_id, body
        return {"statusCode": 200, "headers": {}, "body": "{}"}

    monkeypatch.setitem(lambda_function.AUTHENTICATED_ROUTES, "/categorize-transaction", fake_handler)
    resp = lambda_function.lambda_handler(
        _event("/prod/categorize-transaction", {"description": "Uber"}, token=_token()), _context(),
    )

    assert resp["statusCode"] == 200
    assert seen == {"user": "user-1", "body": {"description": "Uber"}}


def test_keyword_categorisation_end_to_end(hs256):
    resp = lambda_function.lambda_handler(
        _event("/categorize-transaction", {"description": "UBER *TRIP 12.50"}, token=_token()), _context(),
    )
    assert json.loads(resp["body"])["category"] == "transport"


def test_invalid_json_body_is_400(hs256):
    event = _event("/coach-chat", token=_token())
    event["body"] = "{oops"
    assert lambda_function.lambda_handler(event, _context())["statusCode"] == 400


def test_wrong_method_is_405(hs256):
    assert lambda_function.lambda_handler(_event("/coach-chat", {}, method="GET"), _context())["statusCode"] == 405


def test_taxonomy_errors_become_responses(hs256, monkeypatch):
    def broken(principal, body):
        raise PersistenceError("Failed to save transaction", details="constraint violation")

    monkeypatch.setitem(lambda_function.AUTHENTICATED_ROUTES, "/analyze-receipt", broken)
    resp = lambda_function.lambda_handler(_event("/analyze-receipt", {}, token=_token()), _context())

    assert resp["statusCode"] == 500
    assert json.loads(resp["body"]) == {"error": "Failed to save transaction", "code": "persistence_error",
                                        "details": "constraint violation"}


def test_unexpected_errors_become_generic_500(hs256, monkeypatch):
    def crash(principal, body):
        raise KeyError("boom")

    monkeypatch.setitem(lambda_function.AUTHENTICATED_ROUTES, "/analyze-receipt", crash)
    resp = lambda_function.lambda_handler(_event("/analyze-receipt", {}, token=_token()), _context())
    assert resp["statusCode"] == 500
    assert json.loads(resp["body"]) == {"error": "Internal server error"}


def test_webhook_route_skips_bearer_auth(monkeypatch):
    monkeypatch.setattr(lambda_function, "handle_billing_webhook",
                        lambda event: {"statusCode": 200, "headers": {}, "body": '{"success": true}'})
    resp = lambda_function.lambda_handler(_event("/functions/v1/revenuecat-webhook", {}), _context())
    assert resp["statusCode"] == 200


def test_authenticated_email_is_only_logged_at_debug(hs256, monkeypatch, caplog):
    monkeypatch.setitem(lambda_function.AUTHENTICATED_ROUTES, "/coach-chat",
                        lambda principal, body: {"statusCode": 200, "headers": {}, "body": "{}"})
    caplog.set_level(logging.DEBUG)

    lambda_function.lambda_handler(_event("/coach-chat", {}, token=_token()), _context())

    records = [r for r in caplog.records if getattr(r, "email", None) == "u@example.com"]
    assert [r.levelno for r in records] == [logging.DEBUG]
    assert records[0].user_id == "user-1"
