"""Unit tests for road_names.py — normalization and alias-aware matching."""

import pytest

from road_names import (
    expand_aliases,
    is_matchable,
    names_match,
    normalize,
    normalize_tokens,
    street_from_address,
)
from site_config import MatchThresholds


class TestNormalize:
    @pytest.mark.parametrize("raw, expected", [
        ("Thomasville Rd", "thomasville"),
        ("N Thomasville Road", "thomasville"),
        ("SR-61/THOMASVILLE RD", "thomasville"),
        ("Capital Circle NE", "capital"),
        ("State Road 61", "sr61"),
        ("U.S. Highway 319", "us319"),
        ("W. Tennessee St.", "tennessee"),
    ])
    def test_examples(self, raw, expected):
        assert normalize(raw) == expected

    def test_keeps_single_token_suffix_word(self):
        # "Circle" alone is a name, not a suffix to strip
        assert normalize_tokens("Circle") == ("circle",)

    def test_blank(self):
        assert normalize(None) == ""
        assert normalize("   ") == ""


class TestAliases:
    def test_local_name_expands_to_routes(self):
        assert expand_aliases("Thomasville Rd") >= {"thomasville", "sr61", "us319"}

    def test_route_expands_to_local_name_only(self):
        aliases = expand_aliases("US-319")
        assert "thomasville" in aliases
        assert "sr61" not in aliases

    def test_unknown_name(self):
        assert expand_aliases("Ocala Rd") == {"ocala"}


class TestNamesMatch:
    def test_descriptive_label_matches_local_name(self):
        assert names_match("Thomasville Rd", "SR-61/THOMASVILLE RD")

    def test_route_number_matches_via_alias(self):
        assert names_match("Thomasville Road", "SR-61")
        assert names_match("US 319", "Thomasville Rd")

    def test_name_inside_multi_part_label(self):
        assert names_match("Thomasville", "THOMASVILLE RD/I-10")
        assert names_match("Main St", "W MAIN ST / US-90")

    def test_symmetric(self):
        pairs = [
            ("Thomasville Rd", "SR-61/THOMASVILLE RD"),
            ("Main St", "Maine Ave"),
            ("Capital Circle NE", "CAPITAL CIRCLE NE/SR-263"),
        ]
        for a, b in pairs:
            assert names_match(a, b) == names_match(b, a)

    def test_prefix_of_other_word_does_not_match(self):
        assert not names_match("Main St", "Maine Ave")

    def test_different_route_numbers(self):
        assert not names_match("US-90", "US-319")
        assert not names_match("SR-6", "SR-61")

    def test_unrelated_names(self):
        assert not names_match("Thomasville Rd", "Tennessee St")

    def test_na_and_blank_never_match(self):
        assert not names_match("N/A", "N/A")
        assert not names_match("N/A", "Thomasville Rd")
        assert not names_match("", "")
        assert not names_match(None, "Thomasville Rd")

    def test_short_keys_below_minimum(self):
        strict = MatchThresholds(min_match_length=6, containment_ratio=0.6)
        assert not names_match("Oak St", "OAK PINE ST", strict)
        assert names_match("Oak St", "OAK PINE ST")


class TestIsMatchable:
    def test_usable(self):
        assert is_matchable("Thomasville Rd")

    def test_unusable(self):
        assert not is_matchable("N/A")
        assert not is_matchable("  ")
        assert not is_matchable(None)
        assert not is_matchable("US")


class TestStreetFromAddress:
    def test_full_address(self):
        assert street_from_address("1234 Thomasville Rd, Tallahassee, FL 32308") == "Thomasville Rd"

    def test_unit_suffix(self):
        assert street_from_address("200 E College Ave Suite 4, Tallahassee") == "E College Ave"

    def test_no_house_number(self):
        assert street_from_address("Apalachee Pkwy, Tallahassee") == "Apalachee Pkwy"

    def test_blank(self):
        assert street_from_address("") is None
        assert street_from_address(None) is None
