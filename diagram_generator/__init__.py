"""Gemini Diagram MCP Server - professional diagrams from natural language.

This package provides an MCP server that turns prompts into diagrams and
infographics with Google's Gemini image models, reachable over stdio, over
multi-tenant HTTP/SSE, or through a stdio-to-HTTP forwarding proxy.
"""

from .analyzer import (
    DIAGRAM_TYPES,
    PromptAnalysis,
    analyze_prompt,
    build_prompt_from_context,
    detect_type,
    detect_type_with_confidence,
)
from .config import ConfigError, ProxyConfig, ServerConfig
from .core import GeminiImageGenerator, GenerationError, ImageResult, generate_image
from .dispatcher import Clarification, DispatcherOptions, GenerationOutcome, ToolDispatcher
from .server import create_server
from .session import Session, SessionStore

__all__ = [name for name in locals() if not name.startswith("_")]

__version__ = "1.0.0"
