"""Tests for the forwarding proxy."""
# pylint: disable=missing-function-docstring

import unittest
from types import SimpleNamespace

from fastmcp import Client
from fastmcp.exceptions import ToolError
from mcp.types import TextContent

from diagram_generator.config import ProxyConfig
from diagram_generator.proxy import ProxyForwarder, create_proxy_server, normalize_remote_url


class FakeRemote:
    """Minimal stand-in for a connected fastmcp Client."""

    def __init__(self, result=None, exc=None):
        self.result = result
        self.exc = exc
        self.calls = []
        self.entered = 0
        self.exited = 0

    async def __aenter__(self):
        self.entered += 1
        return self

    async def __aexit__(self, *exc_info):
        self.exited += 1
        return False

    async def call_tool(self, name, arguments, raise_on_error=True):
        self.calls.append((name, arguments, raise_on_error))
        if self.exc:
            raise self.exc
        return self.result


def _result(text, is_error=False):
    return SimpleNamespace(content=[TextContent(type="text", text=text)], is_error=is_error)


class RemoteUrlTests(unittest.TestCase):

    def test_bare_origin_gets_mcp_path(self):
        self.assertEqual(normalize_remote_url("https://diagrams.example.com"), "https://diagrams.example.com/mcp")
        self.assertEqual(normalize_remote_url("http://localhost:3000/"), "http://localhost:3000/mcp")

    def test_explicit_path_kept(self):
        self.assertEqual(normalize_remote_url("https://x.example.com/api/mcp"), "https://x.example.com/api/mcp")

    def test_invalid_url(self):
        with self.assertRaises(ValueError):
            normalize_remote_url("not a url")


class ForwarderTests(unittest.IsolatedAsyncioTestCase):
    """Result relay and error wrapping."""

    async def test_success_relayed_unchanged(self):
        remote = FakeRemote(result=_result("Generated flow (16:9, 2K)"))
        content = await ProxyForwarder(remote).forward("generate_image", {"prompt": "p", "output": None})
        self.assertEqual(content[0].text, "Generated flow (16:9, 2K)")
        self.assertEqual(remote.calls, [("generate_image", {"prompt": "p"}, False)])

    async def test_remote_error_reraised_with_remote_text(self):
        remote = FakeRemote(result=_result("No previous image to refine. Use generate_image first.", True))
        with self.assertRaises(ToolError) as ctx:
            await ProxyForwarder(remote).forward("refine_image", {"refinement": "x"})
        self.assertEqual(str(ctx.exception), "No previous image to refine. Use generate_image first.")

    async def test_transport_failure_wrapped(self):
        remote = FakeRemote(exc=ConnectionError("connection refused"))
        with self.assertRaises(ToolError) as ctx:
            await ProxyForwarder(remote).forward("generate_image", {"prompt": "p"})
        self.assertEqual(str(ctx.exception), "Proxy error: connection refused")

    async def test_malformed_result_wrapped(self):
        remote = FakeRemote(result={"toolResult": 1})
        with self.assertRaises(ToolError) as ctx:
            await ProxyForwarder(remote).forward("generate_image", {"prompt": "p"})
        self.assertTrue(str(ctx.exception).startswith("Proxy error:"))


class ProxyServerTests(unittest.IsolatedAsyncioTestCase):
    """The stdio-facing proxy server."""

    async def test_calls_forwarded_over_one_connection(self):
        remote = FakeRemote(result=_result("ok"))
        config = ProxyConfig(remote_url="http://localhost:3000", auth_token="t")
        server = create_proxy_server(config, client=remote)

        async with Client(server) as client:
            first = await client.call_tool("generate_image", {"prompt": "p", "type": "flow"})
            await client.call_tool("refine_image", {"refinement": "bigger"})

        self.assertEqual(first.content[0].text, "ok")
        self.assertEqual(remote.entered, 1)
        self.assertEqual(remote.exited, 1)
        self.assertEqual(remote.calls[0], ("generate_image", {"prompt": "p", "type": "flow"}, False))
        self.assertEqual(remote.calls[1], ("refine_image", {"refinement": "bigger"}, False))

    async def test_remote_error_surfaces_as_error_result(self):
        remote = FakeRemote(result=_result("Error: quota exceeded", True))
        server = create_proxy_server(ProxyConfig(remote_url="http://r", auth_token="t"), client=remote)
        async with Client(server) as client:
            result = await client.call_tool("generate_image", {"prompt": "p"}, raise_on_error=False)
        self.assertTrue(result.is_error)
        self.assertIn("quota exceeded", result.content[0].text)


if __name__ == "__main__":
    unittest.main()
