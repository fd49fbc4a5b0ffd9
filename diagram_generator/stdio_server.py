"""Embedded direct-pipe binding: one trusted local caller over stdio.

Files land in the working directory unless the caller names an absolute or
nested path. stdout carries the protocol, so all logging goes to stderr.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP

from .config import ServerConfig, require_api_key
from .core import GeminiImageGenerator
from .dispatcher import DispatcherOptions, ImageGenerator, ToolDispatcher
from .server import create_server

logger = logging.getLogger(__name__)

SERVER_NAME = "gemini-diagram"


def build_stdio_dispatcher(
    config: ServerConfig,
    generator: Optional[ImageGenerator] = None,
    *,
    output_dir: Optional[Path] = None,
) -> ToolDispatcher:
    """The one dispatcher shared by every tool call of the process."""
    options = DispatcherOptions(
        output_dir=(output_dir or Path.cwd()).resolve(),
        public_base_url=config.public_base_url,
        allow_absolute_output=True,
        allow_subdirs_in_output=True,
        inline_images=config.inline_images,
    )
    return ToolDispatcher(options, generator or GeminiImageGenerator(model_id=config.model_id))


def create_stdio_server(dispatcher: ToolDispatcher) -> FastMCP:
    return create_server(lambda: dispatcher, name=SERVER_NAME)


def run_stdio(config: Optional[ServerConfig] = None) -> None:
    """Serve over stdin/stdout until the client disconnects.

    Raises:
        ConfigError: If no generation API key is configured.
    """
    config = config or ServerConfig.from_env()
    api_key = require_api_key()
    dispatcher = build_stdio_dispatcher(
        config, GeminiImageGenerator(api_key=api_key, model_id=config.model_id)
    )
    logger.info(
        "Gemini Diagram MCP server running on stdio (output: %s)", dispatcher.options.output_dir
    )
    create_stdio_server(dispatcher).run(transport="stdio", show_banner=False)
