"""
Tests for the model resolver.
"""

import pytest

from llm_gateway.errors import UnknownModelError
from llm_gateway.models import (
    ClaudeHaiku4,
    ClaudeOpus4,
    ClaudeSonnet4,
    ModelProfile,
    canonical_for_backend_model,
    list_models,
    normalize_model_name,
    resolve_model,
)


class TestResolveModel:
    """Every accepted spelling resolves to the same canonical model."""

    @pytest.mark.parametrize(
        "spelling",
        [
            "claude-opus-4",
            "opus",
            "claude-opus-4-20250514",
            "claude-code-cli/claude-opus-4",
            "claude-code-cli/claude-opus-4-20250514",
            "anthropic/claude-opus-4",
            "  Claude-Opus-4  ",
            "OPUS",
            "claude-opus-4-5",
            "claude-opus-4-5-20251101",
        ],
    )
    def test_opus_spellings(self, spelling):
        assert resolve_model(spelling) is ClaudeOpus4

    @pytest.mark.parametrize(
        "spelling,expected",
        [
            ("sonnet", ClaudeSonnet4),
            ("claude-sonnet-4-20250514", ClaudeSonnet4),
            ("claude-sonnet-4-5-20250929", ClaudeSonnet4),
            ("claude-code-cli/claude-sonnet-4", ClaudeSonnet4),
            ("haiku", ClaudeHaiku4),
            ("claude-haiku-4-5-20251001", ClaudeHaiku4),
            ("claude-code-cli/haiku", ClaudeHaiku4),
        ],
    )
    def test_other_families(self, spelling, expected):
        assert resolve_model(spelling) is expected

    @pytest.mark.parametrize(
        "spelling",
        ["gpt-9", "gpt-4o", "", "   ", "claude-opus-5", "opus-mini", "claude-code-cli/", "claude"],
    )
    def test_unknown_spellings_fail(self, spelling):
        with pytest.raises(UnknownModelError):
            resolve_model(spelling)

    def test_unknown_model_message(self):
        with pytest.raises(UnknownModelError) as exc_info:
            resolve_model("gpt-9")

        assert exc_info.value.model == "gpt-9"
        assert "gpt-9" in exc_info.value.message
        assert exc_info.value.http_status == 404


class TestNormalize:
    def test_strips_prefix_then_date(self):
        assert normalize_model_name("claude-code-cli/claude-sonnet-4-20250514") == "claude-sonnet-4"

    def test_keeps_non_date_suffix(self):
        assert normalize_model_name("claude-opus-4-5") == "claude-opus-4-5"


class TestProfiles:
    def test_table(self):
        assert ClaudeOpus4.cli_alias == "opus"
        assert ClaudeOpus4.context_window == 1_000_000
        assert ClaudeOpus4.max_output == 128_000
        assert ClaudeSonnet4.max_output == 64_000
        assert ClaudeHaiku4.context_window == 200_000

    def test_duplicate_key_rejected(self):
        with pytest.raises(ValueError, match="Duplicate model key"):

            class Duplicate(ModelProfile):
                key = "claude-opus-4"
                cli_alias = "opus-dup"
                family = "opus"
                context_window = 1
                max_output = 1

    def test_overlapping_spelling_rejected(self):
        with pytest.raises(ValueError, match="already belongs"):

            class Overlap(ModelProfile):
                key = "claude-overlap-1"
                cli_alias = "sonnet"
                family = "overlap"
                context_window = 1
                max_output = 1

    def test_list_models(self):
        models = list_models()
        ids = [m["id"] for m in models]

        assert ids == ["claude-opus-4", "claude-sonnet-4", "claude-haiku-4"]
        assert all(m["object"] == "model" for m in models)
        assert models[0]["context_window"] == 1_000_000


class TestBackendModel:
    def test_full_name_maps_by_family(self):
        assert canonical_for_backend_model("claude-sonnet-4-5-20250929", ClaudeOpus4) is ClaudeSonnet4

    def test_missing_or_foreign_name_falls_back(self):
        assert canonical_for_backend_model(None, ClaudeHaiku4) is ClaudeHaiku4
        assert canonical_for_backend_model("mystery-model", ClaudeHaiku4) is ClaudeHaiku4
