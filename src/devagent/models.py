"""
Model registry: pricing, context windows and automatic model selection.

Context windows and prices come from hardcoded tables keyed on model id
patterns, overridden by whatever the model catalog reports at runtime.
"auto" selection scores the prompt for coding/reasoning/vision signals and
picks from a preference list, constrained to models the catalog offers.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum

from devagent.config import AUTO_MODEL

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 128_000
LAST_RESORT_MODEL = "grok-2-1212"

KNOWN_GOOD_MODELS: list[str] = [
    "grok-4-1-fast-reasoning",
    "grok-4-1-fast-non-reasoning",
    "grok-4-fast-reasoning",
    "grok-4-fast-non-reasoning",
    "grok-code-fast-1",
    "grok-4",
    "grok-2-vision-1212",
    "grok-2-1212",
    "grok-beta",
]

VISION_MODELS = ["grok-2-vision-1212"]
CODING_MODELS = [
    "grok-code-fast-1",
    "grok-4-1-fast-reasoning",
    "grok-4-fast-reasoning",
    "grok-4",
    "grok-2-1212",
]
REASONING_MODELS = [
    "grok-4-1-fast-reasoning",
    "grok-4-fast-reasoning",
    "grok-4",
    "grok-4-1-fast-non-reasoning",
    "grok-2-1212",
]
DEFAULT_MODELS = [
    "grok-4-1-fast-non-reasoning",
    "grok-4-fast-non-reasoning",
    "grok-4-1-fast-reasoning",
    "grok-4",
    "grok-2-1212",
]

# Tried in order when the endpoint rejects a model id with HTTP 400.
FALLBACK_MODELS = [
    "grok-4-1-fast-non-reasoning",
    "grok-4-fast-non-reasoning",
    "grok-code-fast-1",
    "grok-2-1212",
    "grok-beta",
]

CODING_KEYWORDS: list[tuple[str, int]] = [
    # Languages
    ("javascript", 2), ("typescript", 2), ("python", 2), ("swift", 2),
    ("java", 2), ("kotlin", 2), ("rust", 2), ("go", 2), ("ruby", 2),
    ("php", 2), ("c++", 2), ("c#", 2), ("sql", 2),
    # Frameworks
    ("react", 2), ("next.js", 2), ("nextjs", 2), ("vue", 2), ("angular", 2),
    ("node", 2), ("express", 2), ("django", 2), ("flask", 2),
    ("swiftui", 2), ("tailwind", 2), ("bootstrap", 2),
    # Actions
    ("implement", 1), ("code", 1), ("debug", 1), ("refactor", 1),
    ("build", 1), ("deploy", 1), ("compile", 1), ("test", 1),
    ("fix the bug", 2), ("fix this", 1), ("fix error", 2),
    # Concepts
    ("function", 1), ("class", 1), ("api", 1), ("endpoint", 1),
    ("database", 1), ("query", 1), ("component", 1), ("module", 1),
    ("html", 1), ("css", 1), ("json", 1), ("xml", 1),
    ("website", 1), ("web app", 2), ("mobile app", 2), ("app", 1),
    ("script", 1), ("program", 1), ("algorithm", 1),
    ("create a", 1), ("write a", 1), ("make a", 1),
    ("frontend", 1), ("backend", 1), ("fullstack", 1),
    ("git", 1), ("npm", 1), ("yarn", 1), ("package", 1),
]

REASONING_KEYWORDS: list[tuple[str, int]] = [
    ("explain in detail", 3), ("step by step", 3), ("think through", 3),
    ("reasoning", 2), ("analyze", 2), ("evaluate", 2),
    ("what is the difference", 2), ("compare and contrast", 2),
    ("pros and cons", 2), ("advantages and disadvantages", 2),
    ("why does", 1), ("why is", 1), ("how does", 1), ("how is", 1),
    ("what causes", 1), ("explain", 1), ("describe", 1),
    ("compare", 1), ("contrast", 1),
    ("theory", 1), ("concept", 1), ("principle", 1),
    ("understand", 1), ("meaning", 1), ("significance", 1),
    ("implications", 2), ("consequences", 2),
    ("in depth", 2), ("comprehensive", 2), ("thorough", 2),
]


class TaskComplexity(IntEnum):
    SIMPLE = 1
    MODERATE = 2
    COMPLEX = 3
    VISION = 4


@dataclass
class TaskAnalysis:
    """Keyword scoring of a prompt, used for automatic model selection."""
    is_coding: bool = False
    is_reasoning: bool = False
    is_vision: bool = False
    complexity: TaskComplexity = TaskComplexity.SIMPLE
    coding_score: int = 0
    reasoning_score: int = 0
    detected_keywords: list[str] = field(default_factory=list)


def analyze_task(message_text: str, has_image: bool) -> TaskAnalysis:
    analysis = TaskAnalysis(is_vision=has_image)
    if has_image:
        analysis.complexity = TaskComplexity.VISION
    lower = message_text.lower()

    for keyword, weight in CODING_KEYWORDS:
        if keyword in lower:
            analysis.coding_score += weight
            analysis.detected_keywords.append(keyword)
    analysis.is_coding = analysis.coding_score >= 2

    for keyword, weight in REASONING_KEYWORDS:
        if keyword in lower:
            analysis.reasoning_score += weight
            analysis.detected_keywords.append(keyword)
    analysis.is_reasoning = analysis.reasoning_score >= 2

    if not analysis.is_vision:
        total = analysis.coding_score + analysis.reasoning_score
        if total >= 6 or (analysis.is_coding and analysis.is_reasoning):
            analysis.complexity = TaskComplexity.COMPLEX
        elif total >= 2 or len(message_text) > 500:
            analysis.complexity = TaskComplexity.MODERATE

    return analysis


class ModelRegistry:
    """
    Pricing, context windows and model selection.

    Holds per-instance caches filled from the model catalog, so tests and
    concurrent sessions never share mutable class state.
    """

    def __init__(self) -> None:
        self.context_limits: dict[str, int] = {}
        self.pricing_overrides: dict[str, tuple[float, float]] = {}
        self.available_models: list[str] = []

    def update_catalog(self, models: list[tuple[str, int | None]]) -> None:
        """Record the catalog: (model id, context length if reported)."""
        self.available_models = sorted(model_id for model_id, _ in models)
        for model_id, context_length in models:
            if context_length:
                self.context_limits[model_id] = context_length
        logger.info(f"Model catalog updated: {len(self.available_models)} models")

    def pricing(self, model: str) -> tuple[float, float]:
        """(input, output) USD per million tokens."""
        if model in self.pricing_overrides:
            return self.pricing_overrides[model]

        m = model.lower()
        if "grok-4.1-fast" in m or "grok-4-1-fast" in m:
            return (3.00, 15.00)
        if "grok-4" in m:
            return (6.00, 30.00)
        if "grok-3-mini" in m:
            return (0.30, 0.60)
        if "grok-3" in m:
            return (3.00, 15.00)
        if "grok-2-vision" in m:
            return (5.00, 15.00)
        if "grok-2" in m:
            return (2.00, 10.00)
        if "grok-code" in m:
            return (0.50, 2.00)
        if "grok-beta" in m:
            return (1.00, 5.00)
        return (2.00, 10.00)

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        input_price, output_price = self.pricing(model)
        return (
            input_tokens / 1_000_000 * input_price
            + output_tokens / 1_000_000 * output_price
        )

    def context_window(self, model: str) -> int:
        if model in self.context_limits:
            return self.context_limits[model]

        m = model.lower()
        if "grok-4.1-fast" in m or "grok-4-1-fast" in m:
            return 2_000_000
        if "grok-4" in m:
            return 256_000
        if "grok-3" in m:
            return 1_000_000 if "beta" in m else 131_072
        if "grok-2" in m or "grok-1.5" in m or "grok-code" in m:
            return 128_000
        if "grok-beta" in m:
            return 131_072
        return DEFAULT_CONTEXT_WINDOW

    @staticmethod
    def supports_vision(model: str) -> bool:
        return "vision" in model or "image" in model

    @staticmethod
    def is_fast(model: str) -> bool:
        return "fast" in model or "mini" in model

    @staticmethod
    def is_code_specialized(model: str) -> bool:
        return "code" in model

    @staticmethod
    def is_reasoning(model: str) -> bool:
        m = model.lower()
        if any(tag in m for tag in ("non-reasoning", "fast", "mini", "vision")):
            return False
        if "reasoning" in m:
            return True
        return any(family in m for family in ("grok-4", "grok-3", "grok-2"))

    def _find_valid(self, preferences: list[str], reason: str) -> str:
        if self.available_models:
            safe = [m for m in self.available_models if m in KNOWN_GOOD_MODELS]
        else:
            safe = list(KNOWN_GOOD_MODELS)

        for model in preferences:
            if model in safe or not self.available_models:
                logger.debug(f"Selected '{model}' for: {reason}")
                return model

        fallback = safe[0] if safe else LAST_RESORT_MODEL
        logger.debug(f"Using fallback '{fallback}' for: {reason}")
        return fallback

    def resolve_model(self, selected: str, message_text: str, has_image: bool = False) -> str:
        """
        Pick the model for a new turn.

        A user-selected model is always honored, except that an image forces
        a vision-capable model. "auto" routes on keyword analysis.
        """
        if selected != AUTO_MODEL:
            if has_image and not self.supports_vision(selected):
                return self._find_valid(VISION_MODELS, "image requires vision model")
            return selected

        analysis = analyze_task(message_text, has_image)
        if analysis.is_vision:
            return self._find_valid(VISION_MODELS, "vision task")
        if analysis.is_coding:
            return self._find_valid(CODING_MODELS, f"coding task (score {analysis.coding_score})")
        if (
            analysis.is_reasoning
            or analysis.complexity == TaskComplexity.COMPLEX
            or len(message_text) > 1500
        ):
            return self._find_valid(REASONING_MODELS, "reasoning/complex task")
        return self._find_valid(DEFAULT_MODELS, "general query")

    def next_fallback(self, attempted: list[str]) -> str | None:
        """First fallback model not yet attempted for this message."""
        for model in FALLBACK_MODELS:
            if model not in attempted:
                return model
        return None
