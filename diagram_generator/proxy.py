"""Forwarding proxy: a local stdio MCP server backed by a remote centralized one.

Local clients that only speak stdio get the same two tools; every call is
forwarded over one authenticated Streamable HTTP connection that stays open
for the life of the proxy. The proxy keeps no refinement state of its own:
the remote TransportSession tied to that connection does.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from fastmcp import Client, FastMCP
from fastmcp.client.transports import StreamableHttpTransport
from fastmcp.exceptions import ToolError

from .config import ProxyConfig
from .server import AspectRatioName, DiagramTypeName, SizeName

logger = logging.getLogger(__name__)

PROXY_NAME = "gemini-diagram-proxy"


def normalize_remote_url(raw: str) -> str:
    """Append ``/mcp`` when the remote URL is a bare origin."""
    parts = urlsplit(raw.strip())
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Invalid MCP_REMOTE_URL: {raw}")
    if parts.path in ("", "/"):
        parts = parts._replace(path="/mcp")
    return urlunsplit(parts)


def _error_text(content: List[Any]) -> str:
    texts = [getattr(block, "text", None) for block in content]
    return "\n".join(t for t in texts if t) or "Remote tool call failed"


class ProxyForwarder:
    """Relays tool calls to the remote server through a connected fastmcp Client."""

    def __init__(self, client: Client):
        self.client = client

    async def forward(self, tool: str, arguments: Dict[str, Any]) -> List[Any]:
        """Call ``tool`` remotely and return its content blocks unchanged.

        Raises:
            ToolError: With the remote message when the remote call failed, or
                ``Proxy error: ...`` when the call could not be completed.
        """
        payload = {k: v for k, v in arguments.items() if v is not None}
        try:
            result = await self.client.call_tool(tool, payload, raise_on_error=False)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Forwarding %s failed: %s", tool, exc)
            raise ToolError(f"Proxy error: {exc}") from exc

        content = getattr(result, "content", None)
        if not isinstance(content, list):
            raise ToolError(f"Proxy error: unexpected result from remote server: {result!r}")
        if getattr(result, "is_error", False):
            raise ToolError(_error_text(content))
        return content


def create_proxy_server(config: ProxyConfig, *, client: Optional[Client] = None) -> FastMCP:
    """Build the stdio-facing proxy; the remote connection opens with the server lifespan."""
    remote_url = normalize_remote_url(config.remote_url)
    if client is None:
        client = Client(
            StreamableHttpTransport(
                remote_url, headers={"Authorization": f"Bearer {config.auth_token}"}
            )
        )
    forwarder = ProxyForwarder(client)

    @asynccontextmanager
    async def lifespan(_server):
        async with client:
            logger.info("Connected to remote MCP server at %s", remote_url)
            yield {}

    mcp = FastMCP(PROXY_NAME, lifespan=lifespan)

    @mcp.tool(output_schema=None)
    async def generate_image(
        prompt: str,
        output: Optional[str] = None,
        type: DiagramTypeName = "auto",  # pylint: disable=redefined-builtin
        aspect_ratio: Optional[AspectRatioName] = None,
        size: Optional[SizeName] = None,
    ) -> List[Any]:
        """Proxy to the remote gemini-diagram MCP server (generate_image)."""
        return await forwarder.forward(
            "generate_image",
            {
                "prompt": prompt,
                "output": output,
                "type": type,
                "aspect_ratio": aspect_ratio,
                "size": size,
            },
        )

    @mcp.tool(output_schema=None)
    async def refine_image(refinement: str) -> List[Any]:
        """Proxy to the remote gemini-diagram MCP server (refine_image)."""
        return await forwarder.forward("refine_image", {"refinement": refinement})

    return mcp


def run_proxy(config: Optional[ProxyConfig] = None) -> None:
    """Serve the proxy over stdio.

    Raises:
        ConfigError: If MCP_AUTH_TOKEN is not set.
    """
    config = config or ProxyConfig.from_env()
    mcp = create_proxy_server(config)
    logger.info(
        "Gemini Diagram MCP proxy running on stdio (remote: %s)",
        normalize_remote_url(config.remote_url),
    )
    mcp.run(transport="stdio", show_banner=False)
