"""MCP tool surface for diagram generation.

Registers ``generate_image`` and ``refine_image`` on a FastMCP server. The
tools hold no state of their own: every call asks ``resolve_dispatcher``
for the ToolDispatcher of the calling connection and delegates to it, so
the same surface serves the single stdio caller and every HTTP session.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Literal, Optional, Union

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.utilities.types import Image
from mcp.types import ContentBlock, TextContent

from .core import GenerationError
from .dispatcher import Clarification, GenerationOutcome, NoPriorSessionError, ToolDispatcher

logger = logging.getLogger(__name__)

DiagramTypeName = Literal[
    "auto", "chart", "comparison", "flow", "architecture",
    "timeline", "hierarchy", "matrix", "hero", "visualization",
]
AspectRatioName = Literal["16:9", "1:1", "4:3", "3:4", "9:16", "2:1"]
SizeName = Literal["1K", "2K", "4K"]

DEFAULT_INSTRUCTIONS = (
    "Generates professional diagrams and infographics. Describe what to draw with "
    "generate_image; adjust the last image with refine_image."
)

DispatcherResolver = Callable[[], ToolDispatcher]


def format_outcome(outcome: GenerationOutcome, inline_images: bool) -> List[ContentBlock]:
    """Tool content for a successful generation: summary text, then the optional image."""
    content: List[ContentBlock] = [TextContent(type="text", text="\n".join(outcome.summary_lines()))]
    if inline_images:
        content.append(Image(data=outcome.image, format="png").to_image_content())
    return content


async def _wrap_tool(call) -> Any:
    """Await a dispatcher call and normalize surface errors to ToolError."""
    try:
        return await call
    except NoPriorSessionError as exc:
        raise ToolError(str(exc)) from exc
    except (GenerationError, ValueError, OSError) as exc:
        logger.warning("Tool call failed: %s", exc)
        raise ToolError(f"Error: {exc}") from exc


def create_server(
    resolve_dispatcher: DispatcherResolver,
    *,
    name: str = "gemini-diagram",
    instructions: Optional[str] = DEFAULT_INSTRUCTIONS,
    lifespan=None,
) -> FastMCP:
    """Build a FastMCP server whose tools delegate to the caller's dispatcher."""
    kwargs = {"lifespan": lifespan} if lifespan is not None else {}
    mcp = FastMCP(name, instructions=instructions, **kwargs)

    @mcp.tool(output_schema=None)
    async def generate_image(
        prompt: str,
        output: Optional[str] = None,
        type: DiagramTypeName = "auto",  # pylint: disable=redefined-builtin
        aspect_ratio: Optional[AspectRatioName] = None,
        size: Optional[SizeName] = None,
    ) -> Union[str, List[ContentBlock]]:
        """Generate a professional diagram or infographic from a description.

        The diagram type is detected from the prompt unless ``type`` is set.
        When the prompt is too ambiguous, a clarifying question is returned
        instead of an image.

        Args:
            prompt: What to draw, including any data, labels and numbers.
            output: Output filename or path; generated from the prompt if omitted.
            type: Diagram type, or "auto" to detect it.
            aspect_ratio: Overrides the type's default aspect ratio.
            size: Resolution tier (default 2K; wording like "presentation" or
                "thumbnail" picks 4K or 1K).
        """
        dispatcher = resolve_dispatcher()
        result = await _wrap_tool(
            dispatcher.generate_image(
                prompt,
                output=output,
                diagram_type=type,
                aspect_ratio=aspect_ratio,
                size=size,
            )
        )
        if isinstance(result, Clarification):
            return result.question
        return format_outcome(result, dispatcher.options.inline_images)

    @mcp.tool(output_schema=None)
    async def refine_image(refinement: str) -> List[ContentBlock]:
        """Refine the most recently generated image.

        Keeps the previous type, aspect ratio and size and writes a new file
        next to the previous one.

        Args:
            refinement: What to change, e.g. "make the arrows thicker".
        """
        dispatcher = resolve_dispatcher()
        outcome = await _wrap_tool(dispatcher.refine_image(refinement))
        return format_outcome(outcome, dispatcher.options.inline_images)

    return mcp


__all__ = ["create_server", "format_outcome", "DEFAULT_INSTRUCTIONS"]
