"""
Unit tests for usage normalization and merging.
"""

import pytest

from usage_rollup.core.usage import UsageTotals, ZERO_USAGE, merge_totals, normalize_usage_hash


class TestNormalizeUsageHash:
    """Test conversion of raw counter hashes."""

    def test_current_field_names(self):
        data = {
            "requests": "3",
            "inputTokens": "100",
            "outputTokens": "50",
            "cacheCreateTokens": "10",
            "cacheReadTokens": "5",
            "allTokens": "165",
        }
        usage = normalize_usage_hash(data)
        assert usage == UsageTotals(3, 100, 50, 10, 5, 165)

    def test_legacy_only_record(self):
        """Verify a record written with only legacy names is read in full."""
        usage = normalize_usage_hash({"totalInputTokens": "5", "totalOutputTokens": "3"})
        assert usage.input_tokens == 5
        assert usage.output_tokens == 3
        assert usage.all_tokens == 8
        assert usage.requests == 0

    def test_current_name_wins_over_legacy(self):
        usage = normalize_usage_hash({"inputTokens": "7", "totalInputTokens": "99"})
        assert usage.input_tokens == 7

    def test_stored_all_tokens_trusted_when_positive(self):
        usage = normalize_usage_hash({"inputTokens": "10", "allTokens": "40"})
        assert usage.all_tokens == 40

    def test_zero_all_tokens_recomputed(self):
        """Verify allTokens of zero is replaced by the component sum."""
        usage = normalize_usage_hash({"inputTokens": "10", "cacheReadTokens": "4", "allTokens": "0"})
        assert usage.all_tokens == 14

    def test_unparseable_values_are_zero(self):
        usage = normalize_usage_hash({"requests": "abc", "inputTokens": "-5", "outputTokens": "2.0"})
        assert usage.requests == 0
        assert usage.input_tokens == 0
        assert usage.output_tokens == 2

    def test_unparseable_current_falls_back_to_legacy(self):
        usage = normalize_usage_hash({"requests": "", "totalRequests": "4"})
        assert usage.requests == 4

    @pytest.mark.parametrize("data", [None, {}, [], "garbage", 42])
    def test_malformed_input_is_zero(self, data):
        """Verify non-mapping input normalizes to zero instead of raising."""
        assert normalize_usage_hash(data) == ZERO_USAGE

    def test_integer_values(self):
        usage = normalize_usage_hash({"requests": 2, "inputTokens": 11})
        assert usage.requests == 2
        assert usage.all_tokens == 11


class TestMerge:
    """Test usage merge properties."""

    a = UsageTotals(1, 10, 20, 0, 5, 35)
    b = UsageTotals(2, 3, 4, 6, 0, 13)
    c = UsageTotals(0, 1, 1, 1, 1, 4)

    def test_fieldwise_sum(self):
        assert self.a.merge(self.b) == UsageTotals(3, 13, 24, 6, 5, 48)

    def test_commutative(self):
        assert self.a + self.b == self.b + self.a

    def test_associative(self):
        assert (self.a + self.b) + self.c == self.a + (self.b + self.c)

    def test_zero_identity(self):
        assert self.a + ZERO_USAGE == self.a
        assert ZERO_USAGE + self.a == self.a

    def test_merge_totals(self):
        assert merge_totals([self.a, self.b, self.c]) == self.a + self.b + self.c
        assert merge_totals([]) == ZERO_USAGE

    def test_as_dict_shape(self):
        data = self.a.as_dict()
        assert data["allTokens"] == 35
        assert data["tokens"] == 35
        assert data["cacheReadTokens"] == 5

    def test_is_zero(self):
        assert ZERO_USAGE.is_zero
        assert not self.c.is_zero

    def test_component_tokens_ignores_stored_aggregate(self):
        usage = UsageTotals(input_tokens=10, output_tokens=20, cache_create_tokens=3,
                            cache_read_tokens=1, all_tokens=99)
        assert usage.component_tokens == 34
