"""Tests for complexity scoring and tier-based model selection."""

from __future__ import annotations

import pytest

from llm_broker.complexity import ComplexityAnalyzer, ComplexityScore
from llm_broker.health import HealthMonitor
from llm_broker.registry import ModelRegistry


@pytest.fixture
def analyzer(registry: ModelRegistry, health: HealthMonitor) -> ComplexityAnalyzer:
    return ComplexityAnalyzer(registry, health)


class TestFactors:
    def test_empty_text_has_zero_factors(self, analyzer):
        factors = analyzer.compute_factors("   ")
        assert set(factors) == set(ComplexityAnalyzer.WEIGHTS)
        assert all(v == 0.0 for v in factors.values())

    def test_technical_terms_match_whole_words(self, analyzer):
        assert analyzer.compute_factors("api database query")["technical_terms"] == 1.0
        assert analyzer.compute_factors("apis databases")["technical_terms"] == 0.0

    def test_reasoning_keywords_match_substrings(self, analyzer):
        assert analyzer.compute_factors("explaining")["reasoning"] == 1.0
        assert analyzer.compute_factors("Analyze this")["reasoning"] == 0.5

    def test_code_blocks_are_counted(self, analyzer):
        text = "```a```  and ```b```"
        assert analyzer.compute_factors(text)["code_blocks"] == 2.0

    def test_length_saturates(self, analyzer):
        assert analyzer.compute_factors("word " * 250)["length"] == 1.0


class TestAnalyze:
    def test_empty_prompt_routes_to_fast_tier(self, analyzer):
        result = analyzer.analyze("")
        assert result.score == 0
        assert result.recommended_model == "gpt-4o-mini"
        assert result.fallback_chain[0] == "gpt-4o-mini"

    def test_creative_prompt_routes_to_creative_tier(self, analyzer):
        result = analyzer.analyze("Write a short poem about the ocean")
        assert result.score == 4
        assert result.recommended_model == "claude-3-5-sonnet"
        assert result.fallback_chain[:2] == ["claude-3-5-sonnet", "gpt-4o"]

    def test_creative_tier_skips_offline_member(self, analyzer, mark_offline):
        mark_offline("claude-3-5-sonnet")
        result = analyzer.analyze("Write a short poem about the ocean")
        assert result.recommended_model == "claude-3-opus"
        assert "claude-3-5-sonnet" not in result.fallback_chain

    def test_code_block_routes_to_code_tier(self, analyzer):
        result = analyzer.analyze("Fix this:\n```python\nprint('hi')\n```")
        assert result.factors["code_blocks"] == 1.0
        assert result.score == 16
        assert result.recommended_model == "gpt-4o"

    def test_technical_vocabulary_routes_to_code_tier(self, analyzer, mark_offline):
        mark_offline("gpt-4o")
        result = analyzer.analyze("api database query cache")
        assert result.recommended_model == "gpt-4o-mini"

    def test_high_score_routes_to_high_capability(self, analyzer):
        result = analyzer.analyze("why? " * 8)
        assert result.score == 100
        assert result.recommended_model == "gpt-4o"

    def test_middle_score_uses_healthiest_model(self, analyzer):
        result = analyzer.analyze("Is it raining today? Is it cold? Is it late?")
        assert result.score == 32
        assert result.recommended_model == "gpt-4o"

    def test_context_is_scored_with_prompt(self, analyzer):
        without = analyzer.analyze("hello")
        with_context = analyzer.analyze("hello", ["why? why? why?"])
        assert with_context.score > without.score

    def test_no_healthy_models_returns_default_with_empty_chain(
        self, analyzer, registry, mark_offline
    ):
        mark_offline(*registry.ids())
        result = analyzer.analyze("Write a poem")
        assert result.recommended_model == "gpt-4o"
        assert result.fallback_chain == []

    def test_to_dict(self, analyzer):
        data = analyzer.analyze("").to_dict()
        assert data["score"] == 0
        assert data["recommended_model"] == "gpt-4o-mini"
        assert isinstance(data["fallback_chain"], list)


class TestComplexityScore:
    @pytest.mark.parametrize("score", [-1, 101])
    def test_score_out_of_range(self, score):
        with pytest.raises(ValueError):
            ComplexityScore(score=score, factors={}, recommended_model="gpt-4o")
