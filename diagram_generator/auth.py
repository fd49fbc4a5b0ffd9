"""Request authentication for the centralized HTTP binding.

One verifier is chosen at startup from ``MCP_AUTH_MODE``:

- ``token`` (default): the bearer credential must be one of the configured
  shared secrets.
- ``oidc``: the bearer credential must be a JWT signed by a key from the
  issuer's JWKS, with matching issuer and (optionally) audience.
- ``none``: every request is accepted; meant for deployments behind a
  trusted auth proxy.

Verifiers never raise for a bad credential. They return an AuthResult and
the HTTP middleware turns a denial into a 401.
"""
from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from urllib import error, request
from urllib.parse import parse_qs

import jwt

from .config import AuthConfig, ConfigError, parse_comma_list

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT_SECONDS = 10
JWT_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512", "EdDSA"]

_MODE_ALIASES = {
    "token": "token", "static": "token", "bearer-token": "token",
    "oidc": "oidc", "jwt": "oidc", "oidc-jwt": "oidc",
    "none": "none", "off": "none", "disabled": "none",
}


@dataclass
class RequestCredentials:
    """The parts of a request a verifier may look at."""
    authorization: Optional[str] = None
    query_token: Optional[str] = None

    @classmethod
    def from_scope(cls, scope: Mapping[str, Any]) -> "RequestCredentials":
        """Read the Authorization header and ``?token=`` from an ASGI scope."""
        authorization = None
        for key, value in scope.get("headers") or []:
            if key.lower() == b"authorization":
                authorization = value.decode("latin-1")
                break
        query = parse_qs((scope.get("query_string") or b"").decode("latin-1"))
        tokens = query.get("token") or []
        return cls(authorization=authorization, query_token=tokens[0] if tokens else None)


@dataclass
class AuthResult:
    ok: bool
    status: int = 200
    error: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def deny(cls, message: str = "Unauthorized") -> "AuthResult":
        return cls(ok=False, status=401, error=message)


def parse_auth_mode(raw: Optional[str]) -> str:
    """Normalize MCP_AUTH_MODE; unknown values fall back to ``token``."""
    value = (raw or "token").strip().lower()
    return _MODE_ALIASES.get(value, "token")


def extract_bearer_token(credentials: RequestCredentials, allow_query_token: bool) -> Optional[str]:
    """Return the bearer credential from the header, or from ``?token=`` when allowed."""
    header = (credentials.authorization or "").strip()
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    if allow_query_token and credentials.query_token:
        return credentials.query_token
    return None


class StaticTokenVerifier:
    """Accepts requests carrying one of a fixed set of shared secrets."""
    mode = "token"

    def __init__(self, tokens: Sequence[str], *, allow_query_token: bool = True):
        if not tokens:
            raise ConfigError(
                "Missing required auth configuration: set MCP_AUTH_TOKEN (or MCP_AUTH_TOKENS) "
                "when MCP_AUTH_MODE=token"
            )
        self._tokens = list(tokens)
        self.allow_query_token = allow_query_token

    def verify(self, credentials: RequestCredentials) -> AuthResult:
        token = extract_bearer_token(credentials, self.allow_query_token)
        if not token:
            return AuthResult.deny()
        if not any(hmac.compare_digest(token.encode(), known.encode()) for known in self._tokens):
            return AuthResult.deny()
        return AuthResult(ok=True)


class OidcVerifier:
    """Validates bearer JWTs against an issuer's published signing keys."""
    mode = "oidc"

    def __init__(
        self,
        issuer: str,
        jwks_client: Any,
        *,
        audience: Optional[List[str]] = None,
        allow_query_token: bool = False,
        algorithms: Optional[List[str]] = None,
    ):
        self.issuer = issuer
        self.audience = list(audience or [])
        self.allow_query_token = allow_query_token
        self.algorithms = algorithms or JWT_ALGORITHMS
        self._jwks_client = jwks_client

    def verify(self, credentials: RequestCredentials) -> AuthResult:
        token = extract_bearer_token(credentials, self.allow_query_token)
        if not token:
            return AuthResult.deny()
        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(token)
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=self.algorithms,
                issuer=self.issuer,
                audience=self.audience or None,
                options={"verify_aud": bool(self.audience), "require": ["iss"]},
            )
        except jwt.PyJWTError as exc:
            logger.debug("JWT rejected: %s", exc)
            return AuthResult.deny(f"Unauthorized: {exc}")
        return AuthResult(ok=True, claims=claims)


class DisabledVerifier:
    """Accepts everything."""
    mode = "none"
    allow_query_token = False

    def verify(self, credentials: RequestCredentials) -> AuthResult:  # pylint: disable=unused-argument
        return AuthResult(ok=True)


AuthVerifier = Union[StaticTokenVerifier, OidcVerifier, DisabledVerifier]


def _http_get_json(url: str, timeout: float) -> Dict[str, Any]:
    req = request.Request(url, headers={"Accept": "application/json"}, method="GET")
    with request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8"))


def discover_jwks_uri(issuer: str, *, timeout: float = DISCOVERY_TIMEOUT_SECONDS) -> str:
    """Look up ``jwks_uri`` in the issuer's OpenID configuration document."""
    well_known = f"{issuer.rstrip('/')}/.well-known/openid-configuration"
    try:
        document = _http_get_json(well_known, timeout)
    except error.HTTPError as exc:
        raise ConfigError(f"Failed OIDC discovery ({exc.code}): {well_known}") from exc
    except (error.URLError, TimeoutError, ValueError) as exc:
        raise ConfigError(f"Failed OIDC discovery ({exc}): {well_known}") from exc
    jwks_uri = document.get("jwks_uri") if isinstance(document, dict) else None
    if not jwks_uri:
        raise ConfigError(f"OIDC discovery missing jwks_uri: {well_known}")
    return jwks_uri


def create_auth_verifier(config: AuthConfig, *, jwks_client: Any = None) -> AuthVerifier:
    """Select and build the verifier for this process.

    Raises:
        ConfigError: If the selected mode is missing required settings or
            OIDC discovery fails.
    """
    mode = parse_auth_mode(config.mode_raw)

    if mode == "none":
        logger.warning(
            "MCP_AUTH_MODE=none disables authentication. "
            "Only use behind a trusted auth proxy / private network."
        )
        return DisabledVerifier()

    if mode == "oidc":
        if not config.oidc_issuer:
            raise ConfigError(
                "Missing required auth configuration: set OIDC_ISSUER when MCP_AUTH_MODE=oidc"
            )
        if not config.oidc_audience:
            logger.warning(
                "OIDC_AUDIENCE is not set. Tokens will be validated without an audience check."
            )
        if jwks_client is None:
            jwks_uri = config.oidc_jwks_uri or discover_jwks_uri(config.oidc_issuer)
            jwks_client = jwt.PyJWKClient(jwks_uri)
        return OidcVerifier(
            config.oidc_issuer,
            jwks_client,
            audience=config.oidc_audience,
            allow_query_token=config.allow_query_token_raw == "1",
        )

    return StaticTokenVerifier(
        config.tokens, allow_query_token=config.allow_query_token_raw != "0"
    )


__all__ = [
    "AuthResult",
    "AuthVerifier",
    "DisabledVerifier",
    "OidcVerifier",
    "RequestCredentials",
    "StaticTokenVerifier",
    "create_auth_verifier",
    "discover_jwks_uri",
    "extract_bearer_token",
    "parse_auth_mode",
    "parse_comma_list",
]
