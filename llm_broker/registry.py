"""Model registry - the static catalog every routing decision reads from.

The registry is an explicit value built once at process start and passed to
the HealthMonitor, ComplexityAnalyzer, FallbackChainBuilder, ExecutionEngine
and Orchestrator. It holds no mutable state.

Default catalog (priority decides the default fallback order):

    gpt-4o (100) > claude-3-5-sonnet (90) > gpt-3.5-turbo (80) > gemini-pro (70)
    > claude-3-opus (65) > gpt-4o-mini (60) > llama-3.1-70b (55)
    > claude-3-haiku (50) > gemini-flash (45) > mixtral-8x7b (40)

Routing tiers used by the complexity analyzer:
- HIGH_CAPABILITY: gpt-4o, claude-3-5-sonnet, claude-3-opus
- CODE: gpt-4o, gpt-4o-mini, gpt-3.5-turbo
- CREATIVE: claude-3-5-sonnet, claude-3-opus
- FAST: gpt-4o-mini, claude-3-haiku, gemini-flash
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

log = structlog.get_logger(__name__)


class ProviderKind(StrEnum):
    """Upstream API families. Groq speaks the OpenAI wire format."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    GROQ = "groq"


class ModelTier(StrEnum):
    """Routing tiers the complexity analyzer selects from."""

    HIGH_CAPABILITY = "high_capability"
    CODE = "code"
    CREATIVE = "creative"
    FAST = "fast"


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of one routable model.

    Attributes:
        id: Broker-facing model identifier (e.g. "gpt-4o")
        provider: Upstream API family
        display_name: Human-friendly name
        upstream_model: Identifier sent to the provider API
        cost_per_1k_input: USD per 1000 prompt tokens
        cost_per_1k_output: USD per 1000 completion tokens
        max_output_tokens: Maximum completion tokens the model accepts
        context_window: Maximum context size in tokens
        priority: Tie-break weight; higher is tried earlier
        strengths: Declared strengths, informational
    """

    id: str
    provider: ProviderKind
    display_name: str
    upstream_model: str
    cost_per_1k_input: float
    cost_per_1k_output: float
    max_output_tokens: int
    context_window: int
    priority: int
    strengths: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.cost_per_1k_input < 0 or self.cost_per_1k_output < 0:
            raise ValueError(f"{self.id}: costs cannot be negative")
        if self.max_output_tokens < 1:
            raise ValueError(f"{self.id}: max_output_tokens must be positive")
        if self.context_window < self.max_output_tokens:
            raise ValueError(f"{self.id}: context_window smaller than max_output_tokens")

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        """USD cost of a call with the given token counts."""
        return (
            input_tokens / 1000 * self.cost_per_1k_input
            + output_tokens / 1000 * self.cost_per_1k_output
        )


class ModelRegistry:
    """Lookup over a fixed set of ModelDescriptors and routing tiers."""

    def __init__(
        self,
        models: Sequence[ModelDescriptor],
        tiers: Mapping[ModelTier, Sequence[str]] | None = None,
    ) -> None:
        if not models:
            raise ValueError("ModelRegistry requires at least one model")

        self._models: dict[str, ModelDescriptor] = {}
        for model in models:
            if model.id in self._models:
                raise ValueError(f"Duplicate model id: {model.id}")
            self._models[model.id] = model

        self._tiers: dict[ModelTier, tuple[str, ...]] = {}
        for tier, members in (tiers or {}).items():
            unknown = [m for m in members if m not in self._models]
            if unknown:
                raise ValueError(f"Tier {tier.value} references unknown models: {unknown}")
            self._tiers[tier] = tuple(members)

        log.info(
            "model_registry.initialized",
            model_count=len(self._models),
            tiers={tier.value: list(members) for tier, members in self._tiers.items()},
        )

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)

    def get(self, model_id: str) -> ModelDescriptor:
        """Return the descriptor for ``model_id``.

        Raises:
            KeyError: If the model is not in the catalog
        """
        try:
            return self._models[model_id]
        except KeyError:
            raise KeyError(f"Unknown model: {model_id}") from None

    def ids(self) -> list[str]:
        """Model ids in catalog order."""
        return list(self._models)

    def by_priority(self) -> list[str]:
        """Model ids by descending priority, catalog order on ties."""
        return [m.id for m in sorted(self._models.values(), key=lambda m: -m.priority)]

    def tier(self, tier: ModelTier) -> tuple[str, ...]:
        """Ordered members of a routing tier (empty if the tier is undefined)."""
        return self._tiers.get(tier, ())

    def default_model(self) -> str:
        """Highest-priority model; the deterministic default when nothing is healthy."""
        return self.by_priority()[0]


DEFAULT_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="gpt-4o",
        provider=ProviderKind.OPENAI,
        display_name="GPT-4o",
        upstream_model="gpt-4o",
        cost_per_1k_input=0.005,
        cost_per_1k_output=0.015,
        max_output_tokens=4096,
        context_window=128_000,
        priority=100,
        strengths=("reasoning", "code", "analysis"),
    ),
    ModelDescriptor(
        id="gpt-4o-mini",
        provider=ProviderKind.OPENAI,
        display_name="GPT-4o Mini",
        upstream_model="gpt-4o-mini",
        cost_per_1k_input=0.00015,
        cost_per_1k_output=0.0006,
        max_output_tokens=4096,
        context_window=128_000,
        priority=60,
        strengths=("speed", "cost", "reasoning"),
    ),
    ModelDescriptor(
        id="gpt-3.5-turbo",
        provider=ProviderKind.OPENAI,
        display_name="GPT-3.5 Turbo",
        upstream_model="gpt-3.5-turbo",
        cost_per_1k_input=0.0005,
        cost_per_1k_output=0.0015,
        max_output_tokens=4096,
        context_window=16_384,
        priority=80,
        strengths=("speed", "cost", "versatile"),
    ),
    ModelDescriptor(
        id="claude-3-5-sonnet",
        provider=ProviderKind.ANTHROPIC,
        display_name="Claude 3.5 Sonnet",
        upstream_model="claude-3-5-sonnet-20240620",
        cost_per_1k_input=0.003,
        cost_per_1k_output=0.015,
        max_output_tokens=4096,
        context_window=200_000,
        priority=90,
        strengths=("analysis", "writing", "safety"),
    ),
    ModelDescriptor(
        id="claude-3-opus",
        provider=ProviderKind.ANTHROPIC,
        display_name="Claude 3 Opus",
        upstream_model="claude-3-opus-20240229",
        cost_per_1k_input=0.015,
        cost_per_1k_output=0.075,
        max_output_tokens=4096,
        context_window=200_000,
        priority=65,
        strengths=("reasoning", "analysis", "safety"),
    ),
    ModelDescriptor(
        id="claude-3-haiku",
        provider=ProviderKind.ANTHROPIC,
        display_name="Claude 3 Haiku",
        upstream_model="claude-3-haiku-20240307",
        cost_per_1k_input=0.00025,
        cost_per_1k_output=0.00125,
        max_output_tokens=4096,
        context_window=200_000,
        priority=50,
        strengths=("speed", "cost", "concise"),
    ),
    ModelDescriptor(
        id="gemini-pro",
        provider=ProviderKind.GEMINI,
        display_name="Gemini Pro",
        upstream_model="gemini-1.5-pro",
        cost_per_1k_input=0.0005,
        cost_per_1k_output=0.0015,
        max_output_tokens=2048,
        context_window=32_768,
        priority=70,
        strengths=("cost", "multimodal", "knowledge"),
    ),
    ModelDescriptor(
        id="gemini-flash",
        provider=ProviderKind.GEMINI,
        display_name="Gemini Flash",
        upstream_model="gemini-1.5-flash",
        cost_per_1k_input=0.0001,
        cost_per_1k_output=0.0004,
        max_output_tokens=2048,
        context_window=1_048_576,
        priority=45,
        strengths=("speed", "cost", "large context"),
    ),
    ModelDescriptor(
        id="llama-3.1-70b",
        provider=ProviderKind.GROQ,
        display_name="Llama 3.1 70B",
        upstream_model="llama-3.1-70b-versatile",
        cost_per_1k_input=0.00059,
        cost_per_1k_output=0.00079,
        max_output_tokens=4096,
        context_window=128_000,
        priority=55,
        strengths=("open source", "reasoning", "speed"),
    ),
    ModelDescriptor(
        id="mixtral-8x7b",
        provider=ProviderKind.GROQ,
        display_name="Mixtral 8x7B",
        upstream_model="mixtral-8x7b-32768",
        cost_per_1k_input=0.00024,
        cost_per_1k_output=0.00024,
        max_output_tokens=2048,
        context_window=32_768,
        priority=40,
        strengths=("speed", "cost", "open source"),
    ),
)

DEFAULT_TIERS: dict[ModelTier, tuple[str, ...]] = {
    ModelTier.HIGH_CAPABILITY: ("gpt-4o", "claude-3-5-sonnet", "claude-3-opus"),
    ModelTier.CODE: ("gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo"),
    ModelTier.CREATIVE: ("claude-3-5-sonnet", "claude-3-opus"),
    ModelTier.FAST: ("gpt-4o-mini", "claude-3-haiku", "gemini-flash"),
}


def build_default_registry() -> ModelRegistry:
    """Construct the registry from the built-in catalog."""
    return ModelRegistry(DEFAULT_MODELS, DEFAULT_TIERS)
