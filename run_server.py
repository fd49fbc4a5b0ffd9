#!/usr/bin/env python3
"""Startup script for the Gemini Diagram MCP Server.

Three deployment modes share the same tools:

- ``stdio``: embedded server for one local client (Claude Desktop, VS Code...)
- ``http``: centralized multi-tenant server (Streamable HTTP + legacy SSE)
- ``proxy``: local stdio server forwarding to a remote ``http`` deployment

Usage:
    python run_server.py [stdio|http|proxy]

The mode can also come from MCP_MODE. Logs always go to stderr.
"""
import logging
import os
import sys
from pathlib import Path

# Add the project directory to path so imports work correctly
project_dir = Path(__file__).resolve().parent
if str(project_dir) not in sys.path:
    sys.path.insert(0, str(project_dir))

from diagram_generator.config import ConfigError  # noqa: E402

MODES = ("stdio", "http", "proxy")

logger = logging.getLogger("diagram_generator")


def _configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _select_mode(argv) -> str:
    mode = (argv[1] if len(argv) > 1 else os.getenv("MCP_MODE") or "stdio").strip().lower()
    if mode not in MODES:
        raise ConfigError(f"Unknown mode '{mode}'. Expected one of: {', '.join(MODES)}")
    return mode


def main(argv=None) -> int:
    argv = sys.argv if argv is None else argv
    _configure_logging()
    try:
        mode = _select_mode(argv)
        if mode == "http":
            from diagram_generator.http_server import run_http
            run_http()
        elif mode == "proxy":
            from diagram_generator.proxy import run_proxy
            run_proxy()
        else:
            from diagram_generator.stdio_server import run_stdio
            run_stdio()
    except ConfigError as exc:
        logger.error("Error: %s", exc)
        return 1
    except KeyboardInterrupt:
        return 0
    except Exception:  # pylint: disable=broad-except
        logger.exception("Fatal error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
