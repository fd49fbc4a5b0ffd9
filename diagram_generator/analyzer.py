"""Prompt classification for diagram generation.

Maps a free-text prompt to a diagram category, a confidence tier and the
composition parameters (aspect ratio, resolution tier) to request from the
generator. Everything here is pure: no I/O and no state, so classifying the
same prompt twice always yields the same result.

Scoring: each category owns a list of trigger phrases. A matched phrase adds
its word count to the category score, so "before after" (2) outweighs a
lone "vs" (1). Categories are ranked by score with a stable sort over the
order of TYPE_KEYWORDS, which is therefore the tie-break.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple


class DiagramType(NamedTuple):
    aspect_ratio: str
    composition: str


DIAGRAM_TYPES: Dict[str, DiagramType] = {
    "chart": DiagramType("16:9", "Data visualization with clear labels, axes if needed, legend"),
    "comparison": DiagramType("16:9", "Side-by-side panels, clear contrast between options"),
    "flow": DiagramType("16:9", "Sequential stages connected by arrows, left-to-right or top-to-bottom"),
    "architecture": DiagramType("4:3", "System components with connections, layered structure"),
    "timeline": DiagramType("16:9", "Horizontal progression with milestones, dates/phases marked"),
    "hierarchy": DiagramType("4:3", "Tree structure, parent-child relationships, org chart style"),
    "matrix": DiagramType("1:1", "Grid layout, 2x2 or larger, quadrants with labels"),
    "hero": DiagramType("2:1", "Abstract visual, no text, atmospheric, brand-focused"),
    "visualization": DiagramType("16:9", "Process or data visualization with clear flow"),
}

DEFAULT_TYPE = "visualization"
FALLBACK_ALTERNATIVES = ["chart", "flow", "architecture"]

# Iteration order is the tie-break between equal scores.
TYPE_KEYWORDS: Dict[str, List[str]] = {
    "comparison": [
        "comparison", "compare", "vs", "versus", "before after", "old new",
        "difference", "improvement", "baseline",
    ],
    "flow": [
        "flow", "process", "steps", "workflow", "pipeline", "sequence",
        "journey", "procedure", "->", "→", "then", "next",
    ],
    "architecture": [
        "architecture", "system", "infrastructure", "layers", "components",
        "stack", "design", "structure", "diagram",
    ],
    "timeline": [
        "timeline", "roadmap", "phases", "milestones", "history", "evolution",
        "schedule", "plan",
    ],
    "hierarchy": [
        "hierarchy", "org chart", "organization", "tree", "taxonomy",
        "parent child", "inheritance",
    ],
    "matrix": [
        "matrix", "grid", "table", "features", "pricing", "tiers", "plans",
        "quadrant", "2x2",
    ],
    "chart": [
        "chart", "graph", "data", "metrics", "statistics", "analytics", "bar",
        "line", "pie", "progress",
    ],
    "hero": ["hero", "header", "banner", "cover", "abstract"],
    "visualization": ["visualization", "infographic", "overview", "summary"],
}

DEFAULT_SIZE = "2K"

SIZE_HINTS: Sequence[Tuple[str, Sequence[str]]] = (
    ("4K", ("presentation", "slide", "slides", "4k", "high res", "hi res", "high resolution")),
    ("1K", ("thumbnail", "small", "preview")),
)
ASPECT_HINTS: Sequence[Tuple[str, Sequence[str]]] = (
    ("1:1", ("square",)),
    ("2:1", ("wide", "banner", "header")),
    ("9:16", ("portrait", "mobile", "story")),
)

SIZE_MAP = {
    "1K": "approximately 1024 pixels on the longest side",
    "2K": "approximately 2048 pixels on the longest side",
    "4K": "approximately 4096 pixels on the longest side",
}

# Words allowed between the words of a multi-word trigger ("before vs 120ms after").
MAX_PHRASE_GAP = 3

HIGH_CONFIDENCE_SCORE = 3
COMPETITION_RATIO = 0.7

_TOKEN_RE = re.compile(r"[a-z0-9]+")

SYSTEM_PROMPT = """BACKGROUND REQUIREMENTS:
- Primary background: Clean white (#ffffff) or very light gray (#f8fafc)
- Secondary backgrounds: Light gray (#f1f5f9) for cards/containers
- NO dark backgrounds - images must work on white web pages
- Subtle shadows for depth instead of dark containers

TYPOGRAPHY REQUIREMENTS:
- Primary font: Clean sans-serif (Inter, SF Pro, or Helvetica Neue style)
- Text color: Dark charcoal (#1e293b) for primary text
- Secondary text: Medium gray (#64748b)
- Headlines: Bold weight, tight letter-spacing
- Numbers/Data: Tabular figures, medium weight
- NO decorative, script, or novelty fonts
- Minimum font size equivalent to 14pt for readability

COLOR PALETTE:
- Background: White #ffffff or light gray #f8fafc
- Cards/Containers: Light gray #f1f5f9 with subtle borders
- Primary accent: Blue #3b82f6
- Success: Green #22c55e
- Warning: Amber #f59e0b
- Danger: Red #ef4444
- Text: Dark charcoal #1e293b
- Borders: Light gray #e2e8f0

STYLE:
- Modern, clean, minimal SaaS aesthetic
- Light and airy feel
- Subtle drop shadows (not harsh)
- Consistent 8px or 16px spacing
- Rounded corners (8-12px radius)
- Professional enterprise look
- Works seamlessly on white web pages"""


@dataclass(frozen=True)
class TypeDetection:
    """Detected category with confidence and ranked alternatives."""
    type: str
    confidence: str
    alternative_types: List[str]
    reasoning: str
    scores: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PromptAnalysis:
    """Classification result: what to generate, or what to ask first."""
    should_proceed: bool
    recommended_type: str
    recommended_aspect_ratio: str
    recommended_size: str
    confidence: str
    alternative_types: List[str] = field(default_factory=list)
    clarifying_question: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)


def _tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def _phrase_matches(phrase: str, tokens: Sequence[str], lowered: str, max_gap: int) -> bool:
    words = _tokenize(phrase)
    if not words:
        # Symbolic trigger such as "->".
        return phrase in lowered
    if len(words) == 1:
        return words[0] in tokens

    for start, token in enumerate(tokens):
        if token != words[0]:
            continue
        pos = start
        for word in words[1:]:
            window = tokens[pos + 1:pos + 2 + max_gap]
            if word not in window:
                break
            pos = pos + 1 + window.index(word)
        else:
            return True
    return False


def score_types(prompt: str) -> Dict[str, int]:
    """Score every category for ``prompt`` (in TYPE_KEYWORDS order)."""
    lowered = prompt.lower()
    tokens = _tokenize(prompt)
    scores: Dict[str, int] = {}
    for dtype, keywords in TYPE_KEYWORDS.items():
        score = 0
        for keyword in keywords:
            if _phrase_matches(keyword, tokens, lowered, MAX_PHRASE_GAP):
                score += max(len(keyword.split()), 1)
        scores[dtype] = score
    return scores


def detect_type_with_confidence(prompt: str) -> TypeDetection:
    """Detect the diagram type with confidence and alternatives."""
    scores = score_types(prompt)
    # sorted() is stable, so equal scores keep TYPE_KEYWORDS order.
    ranked = sorted(((t, s) for t, s in scores.items() if s > 0), key=lambda item: -item[1])

    if not ranked:
        return TypeDetection(
            type=DEFAULT_TYPE,
            confidence="low",
            alternative_types=list(FALLBACK_ALTERNATIVES),
            reasoning=(
                "No specific type keywords found. Consider specifying: chart, flow, "
                "architecture, comparison, timeline, hierarchy, or matrix."
            ),
            scores=scores,
        )

    top_type, top_score = ranked[0]
    alternatives = [t for t, _ in ranked[1:4]]
    has_competition = len(ranked) > 1 and ranked[1][1] >= top_score * COMPETITION_RATIO

    if top_score >= HIGH_CONFIDENCE_SCORE and not has_competition:
        confidence = "high"
        reasoning = f"Strong match for {top_type} based on keywords."
    elif top_score >= 2 or (top_score >= 1 and not has_competition):
        confidence = "medium"
        also = f", but could also be {' or '.join(alternatives[:2])}" if alternatives else ""
        reasoning = f"Detected {top_type}{also}."
    else:
        confidence = "low"
        consider = f"Consider: {', '.join(alternatives)}" if alternatives else ""
        reasoning = f"Weak signal for {top_type}. {consider}".strip()

    return TypeDetection(
        type=top_type,
        confidence=confidence,
        alternative_types=alternatives,
        reasoning=reasoning,
        scores=scores,
    )


def detect_type(prompt: str) -> str:
    return detect_type_with_confidence(prompt).type


def _hint(prompt: str, hints: Sequence[Tuple[str, Sequence[str]]]) -> Optional[str]:
    lowered = prompt.lower()
    tokens = _tokenize(prompt)
    for value, words in hints:
        if any(_phrase_matches(word, tokens, lowered, 0) for word in words):
            return value
    return None


def size_hint(prompt: str) -> Optional[str]:
    """Resolution tier implied by wording such as "presentation" or "thumbnail"."""
    return _hint(prompt, SIZE_HINTS)


def aspect_ratio_hint(prompt: str) -> Optional[str]:
    """Aspect ratio implied by wording such as "square" or "banner"."""
    return _hint(prompt, ASPECT_HINTS)


def _clarifying_question(detection: TypeDetection) -> str:
    options = "\n".join(
        f"- {name}: {spec.composition.split(',')[0]}" for name, spec in DIAGRAM_TYPES.items()
    )
    return (
        f"I'm not certain about the best visualization type. {detection.reasoning}\n\n"
        f"What type would you prefer?\n{options}\n\n"
        "Call generate_image again with the 'type' parameter set."
    )


def analyze_prompt(
    prompt: str,
    *,
    diagram_type: Optional[str] = None,
    aspect_ratio: Optional[str] = None,
    size: Optional[str] = None,
) -> PromptAnalysis:
    """Classify ``prompt`` and recommend composition parameters.

    An explicit ``diagram_type`` (anything but "auto") skips detection and
    always proceeds. Explicit ``aspect_ratio`` and ``size`` win over hint
    words, which win over the category defaults.
    """
    if diagram_type == "auto":
        diagram_type = None
    if diagram_type is not None and diagram_type not in DIAGRAM_TYPES:
        raise ValueError(
            f"Unknown diagram type '{diagram_type}'. Expected one of: {', '.join(DIAGRAM_TYPES)}"
        )

    recommended_size = size or size_hint(prompt) or DEFAULT_SIZE

    if diagram_type is not None:
        return PromptAnalysis(
            should_proceed=True,
            recommended_type=diagram_type,
            recommended_aspect_ratio=(
                aspect_ratio or aspect_ratio_hint(prompt) or DIAGRAM_TYPES[diagram_type].aspect_ratio
            ),
            recommended_size=recommended_size,
            confidence="high",
        )

    detection = detect_type_with_confidence(prompt)
    recommended_aspect_ratio = (
        aspect_ratio or aspect_ratio_hint(prompt) or DIAGRAM_TYPES[detection.type].aspect_ratio
    )

    if detection.confidence == "low":
        return PromptAnalysis(
            should_proceed=False,
            recommended_type=detection.type,
            recommended_aspect_ratio=recommended_aspect_ratio,
            recommended_size=recommended_size,
            confidence="low",
            alternative_types=detection.alternative_types,
            clarifying_question=_clarifying_question(detection),
        )

    suggestions: List[str] = []
    if detection.confidence == "medium":
        suggestions = [f"Detected: {detection.type} (medium confidence)"]
        suggestions.extend(f"Alternative: {alt}" for alt in detection.alternative_types)

    return PromptAnalysis(
        should_proceed=True,
        recommended_type=detection.type,
        recommended_aspect_ratio=recommended_aspect_ratio,
        recommended_size=recommended_size,
        confidence=detection.confidence,
        alternative_types=detection.alternative_types,
        suggestions=suggestions,
    )


def build_prompt_from_context(
    context: str,
    *,
    diagram_type: str,
    aspect_ratio: Optional[str] = None,
    size: Optional[str] = None,
) -> str:
    """Wrap the user's description in composition guidance and the house style."""
    spec = DIAGRAM_TYPES.get(diagram_type, DIAGRAM_TYPES["chart"])
    ratio = aspect_ratio or spec.aspect_ratio
    size_desc = SIZE_MAP.get(size or DEFAULT_SIZE, SIZE_MAP[DEFAULT_SIZE])

    return f"""Create a professional {diagram_type} diagram.

CONTEXT:
{context}

COMPOSITION GUIDANCE:
{spec.composition}

IMAGE SPECIFICATIONS:
- Aspect ratio: {ratio}
- Resolution: High quality, {size_desc}
- Format: PNG with clean edges

{SYSTEM_PROMPT}

IMPORTANT:
- Follow the design system exactly (white background, SaaS aesthetic)
- Make the visualization clear and immediately understandable
- Use the standard color palette for data representation
- Maintain the specified {ratio} aspect ratio precisely"""


def build_refinement_prompt(previous_prompt: str, refinement: str) -> str:
    """Combine the previous prompt with a refinement request."""
    return f"""{previous_prompt}

REFINEMENT REQUEST:
{refinement}

IMPORTANT: Keep the same overall design and content, only apply the requested changes."""


def accumulate_prompt(previous_prompt: str, refinement: str) -> str:
    """Prompt stored on the Session after a refinement; chains keep full history."""
    return f"{previous_prompt}\n\nRefinement: {refinement}"
