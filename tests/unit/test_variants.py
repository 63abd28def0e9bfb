"""Tests for deterministic A/B variant assignment."""

from collections import Counter

import pytest

from telemetry_bus.core.variants import assign_variant, bucket


class TestAssignVariant:

    def test_deterministic(self):
        first = assign_variant("hero_banner", "sess-1", ["A", "B"])
        for _ in range(5):
            assert assign_variant("hero_banner", "sess-1", ["A", "B"]) == first

    def test_bucket_range(self):
        for i in range(100):
            assert 0.0 <= bucket("t", f"s{i}") < 1.0

    def test_roughly_even_split(self):
        counts = Counter(assign_variant("t1", f"sess-{i}", ["A", "B"]) for i in range(2000))
        assert 850 < counts["A"] < 1150

    def test_zero_weight_never_chosen(self):
        variants = {"control": 1.0, "disabled": 0.0}
        assert {assign_variant("t1", f"s{i}", variants) for i in range(200)} == {"control"}

    def test_weights_shift_distribution(self):
        variants = {"A": 9, "B": 1}
        counts = Counter(assign_variant("t2", f"s{i}", variants) for i in range(2000))
        assert counts["A"] > counts["B"] * 4

    def test_tests_are_independent(self):
        a = [assign_variant("t1", f"s{i}", ["A", "B"]) for i in range(50)]
        b = [assign_variant("t2", f"s{i}", ["A", "B"]) for i in range(50)]
        assert a != b

    @pytest.mark.parametrize("variants", [[], {"A": 0, "B": 0}, {"A": -1, "B": 2}])
    def test_invalid_variants(self, variants):
        with pytest.raises(ValueError):
            assign_variant("t", "s", variants)
