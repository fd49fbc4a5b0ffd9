"""Environment-driven configuration for the diagram MCP server.

Every deployment mode (stdio, http, proxy) reads its settings from the
process environment. ``.env`` and ``.env.local`` in the project root are
primed into the environment first for local development; variables that
are already set always win.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# Look for .env in the project root (parent directory of this file's parent)
DOTENV_CANDIDATES = [
    Path(__file__).resolve().parents[1] / ".env",
    Path(__file__).resolve().parents[1] / ".env.local",
]

API_KEY_ENVS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_REMOTE_URL = "http://localhost:3000/mcp"


class ConfigError(ValueError):
    """Fatal startup misconfiguration; the process exits before serving traffic."""


def _prime_dotenv_env() -> None:
    """Load environment variables from .env files for local development."""
    for env_file in DOTENV_CANDIDATES:
        try:
            if not env_file.exists():
                continue
            for raw_line in env_file.read_text().splitlines():
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                name, val = line.split("=", 1)
                name = name.strip()
                if not name or name in os.environ:
                    continue
                cleaned = val.strip().strip('"').strip("'")
                if cleaned:
                    os.environ[name] = cleaned
        except OSError:
            continue


def parse_comma_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated setting into its non-empty, stripped items."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_port(value: Optional[str], fallback: int = DEFAULT_PORT) -> int:
    """Parse a TCP port, falling back when the value is missing or out of range."""
    if not value:
        return fallback
    try:
        port = int(value)
    except ValueError:
        return fallback
    if port <= 0 or port > 65535:
        return fallback
    return port


def normalize_base_url(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def _flag(name: str) -> bool:
    return os.getenv(name) == "1"


def get_api_key() -> Optional[str]:
    """Return the generation-service API key, or None if neither variable is set."""
    for name in API_KEY_ENVS:
        value = os.getenv(name)
        if value:
            return value
    return None


def require_api_key() -> str:
    """Return the generation-service API key or raise ConfigError."""
    key = get_api_key()
    if not key:
        raise ConfigError(
            f"{API_KEY_ENVS[0]} or {API_KEY_ENVS[1]} environment variable required"
        )
    return key


@dataclass
class AuthConfig:
    """Authentication settings for the centralized HTTP binding."""
    mode_raw: Optional[str] = None
    tokens: List[str] = field(default_factory=list)
    oidc_issuer: Optional[str] = None
    oidc_audience: List[str] = field(default_factory=list)
    oidc_jwks_uri: Optional[str] = None
    # Raw MCP_ALLOW_QUERY_TOKEN value; each auth mode applies its own default.
    allow_query_token_raw: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AuthConfig":
        tokens = parse_comma_list(os.getenv("MCP_AUTH_TOKENS")) or parse_comma_list(
            os.getenv("MCP_AUTH_TOKEN")
        )
        return cls(
            mode_raw=os.getenv("MCP_AUTH_MODE"),
            tokens=tokens,
            oidc_issuer=(os.getenv("OIDC_ISSUER") or "").strip() or None,
            oidc_audience=parse_comma_list(os.getenv("OIDC_AUDIENCE")),
            oidc_jwks_uri=(os.getenv("OIDC_JWKS_URI") or "").strip() or None,
            allow_query_token_raw=os.getenv("MCP_ALLOW_QUERY_TOKEN"),
        )


@dataclass
class ServerConfig:
    """Settings shared by the stdio and centralized HTTP bindings."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    output_dir: Optional[Path] = None
    public_base_url: Optional[str] = None
    inline_images: bool = False
    model_id: Optional[str] = None
    # Extra Host header values accepted by the HTTP binding.
    allowed_hosts: List[str] = field(default_factory=list)
    auth: AuthConfig = field(default_factory=AuthConfig)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        output_dir = os.getenv("OUTPUT_DIR")
        base_url = os.getenv("PUBLIC_BASE_URL")
        return cls(
            host=os.getenv("HOST") or DEFAULT_HOST,
            port=parse_port(os.getenv("PORT")),
            output_dir=Path(output_dir) if output_dir else None,
            public_base_url=normalize_base_url(base_url) if base_url else None,
            inline_images=_flag("INLINE_IMAGES"),
            model_id=os.getenv("GEMINI_IMAGE_MODEL") or None,
            allowed_hosts=parse_comma_list(os.getenv("ALLOWED_HOSTS")),
            auth=AuthConfig.from_env(),
        )

    def http_output_dir(self) -> Path:
        return (self.output_dir or Path.cwd() / "data" / "out").resolve()

    def http_public_base_url(self) -> str:
        return self.public_base_url or f"http://localhost:{self.port}"


@dataclass
class ProxyConfig:
    """Settings for the forwarding proxy."""
    remote_url: str
    auth_token: str

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        token = os.getenv("MCP_AUTH_TOKEN")
        if not token:
            raise ConfigError("Missing required environment variable: MCP_AUTH_TOKEN")
        return cls(
            remote_url=os.getenv("MCP_REMOTE_URL") or DEFAULT_REMOTE_URL,
            auth_token=token,
        )


# Auto-load .env/.env.local for developer convenience.
_prime_dotenv_env()
