"""Unit tests for request authentication."""
# pylint: disable=missing-function-docstring

import time
import unittest
from types import SimpleNamespace
from unittest.mock import patch
from urllib import error

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from diagram_generator import auth
from diagram_generator.config import AuthConfig, ConfigError

ISSUER = "https://issuer.example.com"


def _creds(header=None, query=None):
    return auth.RequestCredentials(authorization=header, query_token=query)


class BearerExtractionTests(unittest.TestCase):

    def test_header_scheme_is_case_insensitive(self):
        self.assertEqual(auth.extract_bearer_token(_creds("bearer abc"), False), "abc")
        self.assertEqual(auth.extract_bearer_token(_creds("Bearer   abc "), False), "abc")

    def test_other_schemes_ignored(self):
        self.assertIsNone(auth.extract_bearer_token(_creds("Basic abc"), False))

    def test_query_token_only_when_allowed(self):
        self.assertIsNone(auth.extract_bearer_token(_creds(query="q"), False))
        self.assertEqual(auth.extract_bearer_token(_creds(query="q"), True), "q")

    def test_credentials_from_scope(self):
        scope = {
            "headers": [(b"authorization", b"Bearer s3cret")],
            "query_string": b"token=t0k&x=1",
        }
        creds = auth.RequestCredentials.from_scope(scope)
        self.assertEqual(creds.authorization, "Bearer s3cret")
        self.assertEqual(creds.query_token, "t0k")


class AuthModeTests(unittest.TestCase):

    def test_aliases(self):
        for raw, expected in [
            (None, "token"), ("static", "token"), ("bearer-token", "token"),
            ("JWT", "oidc"), ("oidc-jwt", "oidc"), (" off ", "none"),
            ("disabled", "none"), ("nonsense", "token"),
        ]:
            self.assertEqual(auth.parse_auth_mode(raw), expected, raw)


class StaticTokenTests(unittest.TestCase):
    """Shared-secret verification."""

    def setUp(self):
        self.verifier = auth.StaticTokenVerifier(["alpha", "beta"])

    def test_accepts_any_configured_token(self):
        self.assertTrue(self.verifier.verify(_creds("Bearer beta")).ok)

    def test_rejects_missing_and_wrong(self):
        for creds in (_creds(), _creds("Bearer gamma")):
            result = self.verifier.verify(creds)
            self.assertFalse(result.ok)
            self.assertEqual((result.status, result.error), (401, "Unauthorized"))

    def test_query_token_allowed_by_default(self):
        verifier = auth.create_auth_verifier(AuthConfig(tokens=["alpha"]))
        self.assertTrue(verifier.verify(_creds(query="alpha")).ok)

    def test_query_token_can_be_disabled(self):
        verifier = auth.create_auth_verifier(AuthConfig(tokens=["alpha"], allow_query_token_raw="0"))
        self.assertFalse(verifier.verify(_creds(query="alpha")).ok)

    def test_no_tokens_is_a_startup_error(self):
        with self.assertRaises(ConfigError):
            auth.create_auth_verifier(AuthConfig(mode_raw="token"))


class DisabledAuthTests(unittest.TestCase):

    def test_none_mode_warns_and_accepts(self):
        with self.assertLogs("diagram_generator.auth", level="WARNING") as logs:
            verifier = auth.create_auth_verifier(AuthConfig(mode_raw="none"))
        self.assertIn("disables authentication", logs.output[0])
        self.assertEqual(verifier.mode, "none")
        self.assertTrue(verifier.verify(_creds()).ok)


class FakeJwksClient:
    def __init__(self, public_key):
        self.public_key = public_key

    def get_signing_key_from_jwt(self, token):
        jwt.get_unverified_header(token)
        return SimpleNamespace(key=self.public_key)


class OidcTests(unittest.TestCase):
    """JWT verification against a signing key."""

    @classmethod
    def setUpClass(cls):
        cls.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        cls.other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def _token(self, key=None, **overrides):
        claims = {"iss": ISSUER, "aud": "diagram-api", "sub": "user-1", "exp": int(time.time()) + 300}
        claims.update(overrides)
        return jwt.encode(claims, key or self.private_key, algorithm="RS256", headers={"kid": "k1"})

    def _verifier(self, audience=("diagram-api",), allow_query="1"):
        config = AuthConfig(
            mode_raw="oidc",
            oidc_issuer=ISSUER,
            oidc_audience=list(audience),
            allow_query_token_raw=allow_query,
        )
        return auth.create_auth_verifier(config, jwks_client=FakeJwksClient(self.private_key.public_key()))

    def test_valid_token_accepted_with_claims(self):
        result = self._verifier().verify(_creds(f"Bearer {self._token()}"))
        self.assertTrue(result.ok)
        self.assertEqual(result.claims["sub"], "user-1")

    def test_wrong_issuer_rejected(self):
        result = self._verifier().verify(_creds(f"Bearer {self._token(iss='https://evil')}"))
        self.assertFalse(result.ok)
        self.assertTrue(result.error.startswith("Unauthorized: "))

    def test_wrong_audience_rejected(self):
        result = self._verifier().verify(_creds(f"Bearer {self._token(aud='other')}"))
        self.assertFalse(result.ok)

    def test_token_without_expiry_accepted(self):
        token = jwt.encode(
            {"iss": ISSUER, "aud": "diagram-api", "sub": "svc"},
            self.private_key, algorithm="RS256", headers={"kid": "k1"},
        )
        result = self._verifier().verify(_creds(f"Bearer {token}"))
        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.claims["sub"], "svc")

    def test_token_without_issuer_rejected(self):
        token = jwt.encode(
            {"aud": "diagram-api", "exp": int(time.time()) + 300},
            self.private_key, algorithm="RS256", headers={"kid": "k1"},
        )
        self.assertFalse(self._verifier().verify(_creds(f"Bearer {token}")).ok)

    def test_expired_token_rejected(self):
        result = self._verifier().verify(_creds(f"Bearer {self._token(exp=int(time.time()) - 60)}"))
        self.assertFalse(result.ok)

    def test_bad_signature_rejected(self):
        result = self._verifier().verify(_creds(f"Bearer {self._token(key=self.other_key)}"))
        self.assertFalse(result.ok)

    def test_audience_optional_with_warning(self):
        with self.assertLogs("diagram_generator.auth", level="WARNING") as logs:
            verifier = self._verifier(audience=())
        self.assertIn("OIDC_AUDIENCE", logs.output[0])
        self.assertTrue(verifier.verify(_creds(f"Bearer {self._token(aud='anything')}")).ok)

    def test_query_token_disabled_by_default(self):
        verifier = self._verifier(allow_query=None)
        self.assertFalse(verifier.verify(_creds(query=self._token())).ok)
        self.assertTrue(self._verifier().verify(_creds(query=self._token())).ok)

    def test_missing_issuer_is_a_startup_error(self):
        with self.assertRaises(ConfigError):
            auth.create_auth_verifier(AuthConfig(mode_raw="oidc"))


class DiscoveryTests(unittest.TestCase):

    @patch("diagram_generator.auth._http_get_json")
    def test_jwks_uri_discovered(self, mock_get):
        mock_get.return_value = {"jwks_uri": f"{ISSUER}/keys"}
        self.assertEqual(auth.discover_jwks_uri(ISSUER + "/"), f"{ISSUER}/keys")
        self.assertEqual(mock_get.call_args[0][0], f"{ISSUER}/.well-known/openid-configuration")

    @patch("diagram_generator.auth._http_get_json")
    def test_missing_jwks_uri(self, mock_get):
        mock_get.return_value = {}
        with self.assertRaises(ConfigError):
            auth.discover_jwks_uri(ISSUER)

    @patch("diagram_generator.auth._http_get_json")
    def test_discovery_failure(self, mock_get):
        mock_get.side_effect = error.URLError("unreachable")
        with self.assertRaises(ConfigError):
            auth.discover_jwks_uri(ISSUER)

    @patch("diagram_generator.auth.discover_jwks_uri")
    def test_explicit_jwks_uri_skips_discovery(self, mock_discover):
        config = AuthConfig(
            mode_raw="oidc", oidc_issuer=ISSUER, oidc_audience=["a"], oidc_jwks_uri=f"{ISSUER}/jwks"
        )
        verifier = auth.create_auth_verifier(config)
        self.assertEqual(verifier.mode, "oidc")
        mock_discover.assert_not_called()


if __name__ == "__main__":
    unittest.main()
