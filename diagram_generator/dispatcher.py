"""Transport-agnostic implementation of the generate_image / refine_image tools.

One ToolDispatcher serves one logical caller: the stdio binding builds a
single instance for the whole process, the HTTP binding builds one per
transport session. The dispatcher owns its SessionStore, which is what keeps
refinement state from leaking between connections.
"""
from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union
from urllib.parse import quote

import anyio.to_thread

from .analyzer import (
    analyze_prompt,
    accumulate_prompt,
    build_prompt_from_context,
    build_refinement_prompt,
)
from .core import GenerationError, ImageResult, is_valid_png, write_image_to_file
from .session import DEFAULT_SESSION_KEY, Session, SessionStore

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 180
NO_PRIOR_SESSION_MESSAGE = "No previous image to refine. Use generate_image first."


class ImageGenerator(Protocol):
    def generate(self, prompt: str, *, aspect_ratio: str, size: str) -> ImageResult:
        ...


class NoPriorSessionError(LookupError):
    """refine_image was called without a live Session."""

    def __init__(self) -> None:
        super().__init__(NO_PRIOR_SESSION_MESSAGE)


@dataclass
class DispatcherOptions:
    """Per-binding output policy.

    The stdio binding trusts its single local caller (absolute and nested
    output paths allowed); the HTTP binding flattens every requested name to a
    sanitized file inside ``output_dir``.
    """
    output_dir: Path
    public_base_url: Optional[str] = None
    allow_absolute_output: bool = True
    allow_subdirs_in_output: bool = True
    inline_images: bool = False
    download_auth_hint: bool = False


@dataclass
class Clarification:
    """The prompt was too ambiguous to act on; ask the caller instead."""
    question: str
    recommended_size: str


@dataclass
class GenerationOutcome:
    """A successfully generated (or refined) image."""
    output_path: Path
    diagram_type: str
    aspect_ratio: str
    size: str
    image: bytes
    refined: bool = False
    download_url: Optional[str] = None
    download_auth_hint: bool = False
    suggestions: List[str] = field(default_factory=list)

    def summary_lines(self) -> List[str]:
        if self.refined:
            lines = [f"Refined image saved: {self.output_path}"]
        else:
            lines = [
                f"Generated {self.diagram_type} ({self.aspect_ratio}, {self.size})",
                f"Saved: {self.output_path}",
            ]
        if self.download_url:
            lines.append(f"Download: {self.download_url}")
            if self.download_auth_hint:
                lines.append(
                    "Note: download requires the same bearer token as the MCP endpoint "
                    "(Authorization header or ?token=...)."
                )
        if self.suggestions:
            lines.append(f"Note: {'. '.join(self.suggestions)}. Use 'type' parameter to override.")
        return lines


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def slug_from_prompt(prompt: str) -> str:
    """Up to three significant words of the prompt, joined by underscores."""
    cleaned = re.sub(r"[^a-z0-9\s]", " ", prompt.lower())
    words = [w for w in cleaned.split() if len(w) > 2][:3]
    return "_".join(words) or "image"


def ensure_png_extension(name: str) -> str:
    return name if name.lower().endswith(".png") else f"{name}.png"


def sanitize_filename(name: str) -> str:
    """Flatten a caller-supplied name to a safe ``.png`` filename with no directories."""
    base = re.split(r"[\\/]", name)[-1]
    stem = re.sub(r"\.png$", "", re.sub(r"[^A-Za-z0-9._-]", "_", base), flags=re.IGNORECASE)
    if not stem.strip("."):
        return f"image_{_short_id()}.png"
    cleaned = ensure_png_extension(stem)
    if len(cleaned) > MAX_FILENAME_LENGTH:
        stem = re.sub(r"\.png$", "", cleaned[:MAX_FILENAME_LENGTH], flags=re.IGNORECASE)
        cleaned = ensure_png_extension(stem[:MAX_FILENAME_LENGTH - 4])
    return cleaned


def is_path_inside(root: Path, candidate: Path) -> bool:
    root = root.resolve()
    try:
        candidate.resolve().relative_to(root)
    except ValueError:
        return False
    return candidate.resolve() != root


def resolve_output_path(
    options: DispatcherOptions, output: Optional[str], prompt: str
) -> Tuple[Path, Optional[str]]:
    """Return (path to write, filename usable in a download URL or None)."""
    output_dir = options.output_dir
    if not output:
        name = f"{slug_from_prompt(prompt)}_{_short_id()}.png"
        return (output_dir / name).resolve(), name

    if options.allow_absolute_output and os.path.isabs(output):
        return Path(output), None

    if options.allow_subdirs_in_output:
        path = (output_dir / ensure_png_extension(output)).resolve()
        return path, path.name

    name = sanitize_filename(output)
    return (output_dir / name).resolve(), name


def refined_output_path(previous: Path) -> Path:
    """A new sibling of ``previous``; the earlier artifact is never overwritten."""
    return previous.with_name(f"{previous.stem}_refined_{_short_id()}.png")


def resolve_download_path(output_dir: Path, filename: str) -> Path:
    """Map a requested download name to a file directly inside ``output_dir``.

    Raises:
        ValueError: If the name carries a path separator, is a dot entry or
            resolves outside ``output_dir``.
    """
    if not filename or "/" in filename or "\\" in filename or filename in (".", ".."):
        raise ValueError("Invalid filename")
    root = output_dir.resolve()
    candidate = (root / filename).resolve()
    if candidate.parent != root:
        raise ValueError("Invalid filename")
    return candidate


class ToolDispatcher:
    """generate_image / refine_image for one logical caller."""

    def __init__(
        self,
        options: DispatcherOptions,
        generator: ImageGenerator,
        *,
        store: Optional[SessionStore] = None,
        session_key: str = DEFAULT_SESSION_KEY,
    ) -> None:
        self.options = options
        self.generator = generator
        self.store = store if store is not None else SessionStore()
        self.session_key = session_key

    @property
    def last_session(self) -> Optional[Session]:
        return self.store.get(self.session_key)

    def close(self) -> None:
        """Drop this caller's Session."""
        self.store.clear(self.session_key)

    def _download_url(self, path: Path, filename: Optional[str]) -> Optional[str]:
        base = self.options.public_base_url
        if not base or not filename or not is_path_inside(self.options.output_dir, path):
            return None
        return f"{base}/files/{quote(filename, safe='')}"

    async def _render(self, prompt: str, path: Path, *, aspect_ratio: str, size: str) -> Tuple[Path, ImageResult]:
        result = await anyio.to_thread.run_sync(
            partial(self.generator.generate, prompt, aspect_ratio=aspect_ratio, size=size)
        )
        if not is_valid_png(result.buffer):
            raise GenerationError("Generated data is not a valid PNG image", retryable=False)
        saved = await anyio.to_thread.run_sync(write_image_to_file, result.buffer, path)
        return saved.resolve(), result

    async def generate_image(
        self,
        prompt: str,
        output: Optional[str] = None,
        diagram_type: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        size: Optional[str] = None,
    ) -> Union[GenerationOutcome, Clarification]:
        """Classify, generate and record a new image.

        Returns a Clarification without touching the generator or the
        SessionStore when the prompt is too ambiguous.

        Raises:
            ValueError: If the prompt is empty or the type is unknown.
            GenerationError: If the generator fails; the Session is unchanged.
        """
        if not prompt or not prompt.strip():
            raise ValueError("Prompt is required.")

        analysis = analyze_prompt(
            prompt, diagram_type=diagram_type, aspect_ratio=aspect_ratio, size=size
        )
        if not analysis.should_proceed:
            return Clarification(
                question=analysis.clarifying_question or "",
                recommended_size=analysis.recommended_size,
            )

        path, filename = resolve_output_path(self.options, output, prompt)
        enhanced = build_prompt_from_context(
            prompt,
            diagram_type=analysis.recommended_type,
            aspect_ratio=analysis.recommended_aspect_ratio,
            size=analysis.recommended_size,
        )
        saved, result = await self._render(
            enhanced,
            path,
            aspect_ratio=analysis.recommended_aspect_ratio,
            size=analysis.recommended_size,
        )

        self.store.put(
            self.session_key,
            self.store.new_session(
                prompt=prompt,
                output_path=saved,
                diagram_type=analysis.recommended_type,
                aspect_ratio=analysis.recommended_aspect_ratio,
                size=analysis.recommended_size,
            ),
        )
        logger.info("Generated %s image at %s", analysis.recommended_type, saved)

        return GenerationOutcome(
            output_path=saved,
            diagram_type=analysis.recommended_type,
            aspect_ratio=analysis.recommended_aspect_ratio,
            size=analysis.recommended_size,
            image=result.buffer,
            download_url=self._download_url(saved, filename),
            download_auth_hint=self.options.download_auth_hint,
            suggestions=analysis.suggestions,
        )

    async def refine_image(self, refinement: str) -> GenerationOutcome:
        """Regenerate the last image with ``refinement`` applied.

        Category, aspect ratio and size are inherited from the previous
        Session, never re-classified.

        Raises:
            NoPriorSessionError: If there is no live Session.
            GenerationError: If the generator fails; the Session is unchanged.
        """
        if not refinement or not refinement.strip():
            raise ValueError("Refinement is required.")

        last = self.store.get(self.session_key)
        if last is None:
            raise NoPriorSessionError()

        path = refined_output_path(last.output_path)
        enhanced = build_prompt_from_context(
            build_refinement_prompt(last.prompt, refinement),
            diagram_type=last.diagram_type,
            aspect_ratio=last.aspect_ratio,
            size=last.size,
        )
        saved, result = await self._render(
            enhanced, path, aspect_ratio=last.aspect_ratio, size=last.size
        )

        self.store.put(
            self.session_key,
            self.store.new_session(
                prompt=accumulate_prompt(last.prompt, refinement),
                output_path=saved,
                diagram_type=last.diagram_type,
                aspect_ratio=last.aspect_ratio,
                size=last.size,
            ),
        )
        logger.info("Refined image saved at %s", saved)

        return GenerationOutcome(
            output_path=saved,
            diagram_type=last.diagram_type,
            aspect_ratio=last.aspect_ratio,
            size=last.size,
            image=result.buffer,
            refined=True,
            download_url=self._download_url(saved, saved.name),
            download_auth_hint=self.options.download_auth_hint,
        )
