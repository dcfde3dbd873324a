"""Prompt complexity scoring for model selection.

The ComplexityAnalyzer turns prompt text into a 0-100 score from six factors:

    factor               weight   measure
    length               20       min(words / 100, 1)
    technical_terms      25       vocabulary hits / words
    code_blocks          15       fenced ``` blocks
    multiple_questions   10       '?' occurrences
    reasoning            20       words containing a reasoning keyword / words
    creativity           10       words containing a creativity keyword / words

Selection, first match wins (a rule applies only if a tier member is healthy):
- score > 70                                   -> HIGH_CAPABILITY tier
- code_blocks > 0 or technical_terms > 0.1     -> CODE tier
- creativity > 0.1                             -> CREATIVE tier
- score < 30                                   -> FAST tier
- otherwise                                    -> healthiest model overall

Pure computation over text and the current health snapshot; no I/O.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from llm_broker.fallback import FallbackChainBuilder
from llm_broker.health import HealthMonitor
from llm_broker.registry import ModelRegistry, ModelTier

log = structlog.get_logger(__name__)

_CODE_BLOCK = re.compile(r"```.*?```", re.DOTALL)


@dataclass
class ComplexityScore:
    """Result of complexity analysis.

    Attributes:
        score: Overall score (0-100)
        factors: Individual factor values for observability
        recommended_model: Model the request should start with
        fallback_chain: Ordered models to attempt, recommended first
    """

    score: int
    factors: dict[str, float]
    recommended_model: str
    fallback_chain: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not 0 <= self.score <= 100:
            raise ValueError(f"Complexity score must be 0-100, got {self.score}")

    def to_dict(self) -> dict[str, object]:
        return {
            "score": self.score,
            "factors": dict(self.factors),
            "recommended_model": self.recommended_model,
            "fallback_chain": list(self.fallback_chain),
        }


class ComplexityAnalyzer:
    """Scores prompts and recommends a starting model."""

    HIGH_COMPLEXITY_THRESHOLD = 70
    LOW_COMPLEXITY_THRESHOLD = 30
    TECHNICAL_THRESHOLD = 0.1
    CREATIVITY_THRESHOLD = 0.1

    WEIGHTS = {
        "length": 20,
        "technical_terms": 25,
        "code_blocks": 15,
        "multiple_questions": 10,
        "reasoning": 20,
        "creativity": 10,
    }

    # Matched against whole lower-cased words
    TECHNICAL_TERMS = frozenset({
        "algorithm", "function", "variable", "array", "object", "class", "method",
        "api", "database", "query", "server", "client", "framework", "library",
        "component", "module", "package", "dependency", "npm", "git", "repo",
        "docker", "kubernetes", "aws", "cloud", "microservice", "authentication",
        "authorization", "encryption", "hash", "token", "jwt", "oauth", "ssl",
        "http", "https", "rest", "graphql", "websocket", "json", "xml", "yaml",
        "sql", "nosql", "mongodb", "postgresql", "mysql", "redis", "cache",
    })

    # Matched as substrings of lower-cased words ("explaining" counts)
    REASONING_KEYWORDS = (
        "analyze", "compare", "evaluate", "explain", "why", "how", "because",
        "therefore", "however", "although", "consider", "examine", "investigate",
        "determine", "conclude", "infer", "deduce", "reasoning", "logic",
        "cause", "effect", "relationship", "pattern", "trend", "correlation",
    )

    CREATIVITY_KEYWORDS = (
        "create", "generate", "design", "imagine", "invent", "brainstorm",
        "creative", "original", "unique", "innovative", "artistic", "story",
        "narrative", "poem", "write", "compose", "draft", "craft", "build",
        "make", "develop", "conceive", "envision", "dream", "fantasy",
    )

    def __init__(
        self,
        registry: ModelRegistry,
        health: HealthMonitor,
        chains: FallbackChainBuilder | None = None,
    ) -> None:
        self._registry = registry
        self._health = health
        self._chains = chains or FallbackChainBuilder(registry, health)

    def analyze(self, prompt: str, context: Sequence[str] | None = None) -> ComplexityScore:
        """Score ``prompt`` plus ``context`` and pick a model.

        Never raises. When no model is healthy the registry's default model is
        returned with an empty fallback chain so dispatch fails explicitly.
        """
        text = " ".join([prompt or "", *(context or [])])
        factors = self.compute_factors(text)
        score = self._score(factors)

        recommended = self._select(score, factors)
        if recommended is None:
            recommended = self._registry.default_model()
            chain: list[str] = []
            log.warning(
                "complexity_analyzer.no_healthy_models",
                default_model=recommended,
            )
        else:
            chain = self._chains.build(preferred=recommended)

        log.info(
            "complexity_analyzer.analyzed",
            score=score,
            recommended_model=recommended,
            factors=factors,
        )
        return ComplexityScore(
            score=score,
            factors=factors,
            recommended_model=recommended,
            fallback_chain=chain,
        )

    def compute_factors(self, text: str) -> dict[str, float]:
        words = text.lower().split()
        if not words:
            return {name: 0.0 for name in self.WEIGHTS}

        count = len(words)
        technical = sum(1 for w in words if w in self.TECHNICAL_TERMS)
        reasoning = sum(1 for w in words if any(k in w for k in self.REASONING_KEYWORDS))
        creativity = sum(1 for w in words if any(k in w for k in self.CREATIVITY_KEYWORDS))

        return {
            "length": min(count / 100, 1.0),
            "technical_terms": technical / count,
            "code_blocks": float(len(_CODE_BLOCK.findall(text))),
            "multiple_questions": float(text.count("?")),
            "reasoning": reasoning / count,
            "creativity": creativity / count,
        }

    def _score(self, factors: dict[str, float]) -> int:
        raw = sum(factors[name] * weight for name, weight in self.WEIGHTS.items())
        return max(0, min(100, round(raw)))

    def _select(self, score: int, factors: dict[str, float]) -> str | None:
        healthy = self._health.healthy_models()
        if not healthy:
            return None

        rules: list[tuple[bool, ModelTier]] = [
            (score > self.HIGH_COMPLEXITY_THRESHOLD, ModelTier.HIGH_CAPABILITY),
            (
                factors["code_blocks"] > 0
                or factors["technical_terms"] > self.TECHNICAL_THRESHOLD,
                ModelTier.CODE,
            ),
            (factors["creativity"] > self.CREATIVITY_THRESHOLD, ModelTier.CREATIVE),
            (score < self.LOW_COMPLEXITY_THRESHOLD, ModelTier.FAST),
        ]
        for applies, tier in rules:
            if not applies:
                continue
            for model_id in self._registry.tier(tier):
                if model_id in healthy:
                    return model_id
            log.debug("complexity_analyzer.tier_unavailable", tier=tier.value)

        return healthy[0]
