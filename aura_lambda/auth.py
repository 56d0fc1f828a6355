import json
import urllib.request
from dataclasses import dataclass, field

from jose import JWTError, jwt

import config
from config import log_ctx, logger, resolve_secret
from errors import AuthenticationError, ConfigurationError
from helpers import _get_header

jwks_cache = None


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str = ""
    claims: dict = field(default_factory=dict, compare=False)


def get_jwks():
    global jwks_cache
    if jwks_cache is None:
        with urllib.request.urlopen(config.AUTH_JWKS_URL, timeout=5) as response:
            jwks_cache = json.loads(response.read())
    return jwks_cache


def _decode(token):
    audience = config.AUTH_JWT_AUDIENCE or None
    options = {"verify_aud": audience is not None}
    if config.AUTH_JWT_SECRET:
        return jwt.decode(
            token, resolve_secret(config.AUTH_JWT_SECRET),
            algorithms=["HS256"], audience=audience, options=options,
        )
    if config.AUTH_JWKS_URL:
        kid = jwt.get_unverified_header(token).get("kid")
        keys = get_jwks().get("keys", [])
        key = next((k for k in keys if k.get("kid") == kid), None)
        if key is None:
            raise AuthenticationError("Unknown signing key")
        return jwt.decode(
            token, key, algorithms=[key.get("alg", "RS256")],
            audience=audience, options=options,
        )
    raise ConfigurationError("Authentication is not configured")


def verify_token(token) -> Principal:
    if not token or not isinstance(token, str):
        raise AuthenticationError("Missing bearer token")
    try:
        claims = _decode(token.strip())
    except JWTError as exc:
        logger.info(
            f"Token rejected: {exc}",
            extra=log_ctx(module_name="auth"),
        )
        raise AuthenticationError("Invalid token") from exc
    sub = claims.get("sub")
    if not sub:
        raise AuthenticationError("Token has no subject")
    return Principal(user_id=str(sub), email=claims.get("email") or "", claims=claims)


def authenticate(event) -> Principal:
    header = _get_header((event or {}).get("headers"), "Authorization")
    if not header.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    return verify_token(header[7:])
