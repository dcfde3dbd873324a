"""Fallback chain construction.

A chain is the ordered list of models the execution engine attempts for one
request. Offline models never appear in it; a healthy preferred model is always
first.

Ordering:
1. Preferred model (if healthy)
2. Remaining healthy models by descending priority, catalog order on ties

When the caller names several models explicitly, the chain is the healthy
subset of those models in the caller's order instead of the whole registry.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from llm_broker.health import HealthMonitor
from llm_broker.registry import ModelRegistry

log = structlog.get_logger(__name__)


class FallbackChainBuilder:
    """Builds health-filtered fallback chains from the registry."""

    def __init__(self, registry: ModelRegistry, health: HealthMonitor) -> None:
        self._registry = registry
        self._health = health

    def build(
        self,
        preferred: str | None = None,
        candidates: Sequence[str] | None = None,
    ) -> list[str]:
        """Return the ordered list of models to attempt.

        Args:
            preferred: Model to move to the front when healthy
            candidates: Restrict the chain to these models, keeping their order

        Returns:
            Ordered model ids; may be empty when nothing is healthy
        """
        if candidates is not None:
            pool = list(dict.fromkeys(m for m in candidates if m in self._registry))
        else:
            pool = self._registry.by_priority()

        chain = [m for m in pool if self._health.is_healthy(m)]
        skipped = [m for m in pool if m not in chain]

        if preferred is not None and preferred in chain:
            chain.remove(preferred)
            chain.insert(0, preferred)

        log.debug(
            "fallback_chain.built",
            preferred=preferred,
            chain=chain,
            skipped_unhealthy=skipped,
            preferred_dropped=preferred is not None and preferred not in chain,
        )
        return chain
