"""Tests for line matching, totals and line merging."""

from decimal import Decimal

from cartflow.lines import LineKey, compute_total, find_line, merge_lines
from conftest import make_line


class TestLineKey:
    def test_product_id_compared_as_string(self):
        assert LineKey.of(42, "M", "red") == LineKey.of("42", "M", "red")

    def test_empty_selector_matches_missing_selector(self):
        assert LineKey.of("p1", "", None) == LineKey.of("p1", None, "")

    def test_different_variant_is_different_key(self):
        assert LineKey.of("p1", "M", "red") != LineKey.of("p1", "L", "red")
        assert LineKey.of("p1", "M", "red") != LineKey.of("p1", "M", "blue")


class TestFindLine:
    def test_finds_matching_line(self):
        lines = [make_line("p1", size="M"), make_line("p2", size="M")]
        assert find_line(lines, LineKey.of("p2", "M")) == 1

    def test_returns_none_without_match(self):
        lines = [make_line("p1", size="M")]
        assert find_line(lines, LineKey.of("p1", "L")) is None


class TestComputeTotal:
    def test_empty(self):
        assert compute_total([]) == Decimal("0")

    def test_sums_price_times_quantity(self):
        lines = [make_line("p1", "10", 3), make_line("p2", "25.50", 2)]
        assert compute_total(lines) == Decimal("81.00")


class TestMergeLines:
    def test_matching_lines_add_quantities(self):
        merged = merge_lines([make_line("p1", quantity=3)], [make_line("p1", quantity=2)])
        assert len(merged) == 1
        assert merged[0].quantity == 5

    def test_unmatched_lines_are_appended_with_their_snapshot(self):
        target = [make_line("p1", "10", 3)]
        source = [make_line("p2", "7.25", 1, name="Old Name")]
        merged = merge_lines(target, source)
        assert [line.product_id for line in merged] == ["p1", "p2"]
        assert merged[1].price == Decimal("7.25")
        assert merged[1].name == "Old Name"
        assert compute_total(merged) == Decimal("37.25")

    def test_inputs_are_not_mutated(self):
        target = [make_line("p1", quantity=3)]
        source = [make_line("p1", quantity=2)]
        merge_lines(target, source)
        assert target[0].quantity == 3
        assert source[0].quantity == 2
