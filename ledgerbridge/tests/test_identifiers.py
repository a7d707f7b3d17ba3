"""Identifier normalization tests."""

import pytest

from ledgerbridge.credentials.identifiers import (
    identifier_matches,
    identifier_variants,
    is_numeric_identifier,
    normalize_identifier,
)


class TestNormalizeIdentifier:

    @pytest.mark.parametrize("identifier", [
        "acme",
        "acme.pipedrive.com",
        "https://acme.pipedrive.com",
        "http://acme.pipedrive.com/",
        "  ACME.Pipedrive.com  ",
        "HTTPS://acme.pipedrive.com//",
    ])
    def test_all_forms_normalize_to_same_key(self, identifier):
        assert normalize_identifier(identifier) == "acme"

    @pytest.mark.parametrize("identifier", [None, "", "   ", "https://", "https:///"])
    def test_empty_identifiers_normalize_to_none(self, identifier):
        assert normalize_identifier(identifier) is None

    def test_numeric_ids_are_kept(self):
        assert normalize_identifier(12345) == "12345"
        assert normalize_identifier(" 12345 ") == "12345"

    def test_other_domains_are_kept(self):
        assert normalize_identifier("https://acme.example.com") == "acme.example.com"


class TestIdentifierVariants:

    def test_variants_in_order_without_duplicates(self):
        assert identifier_variants("https://acme.pipedrive.com") == [
            "https://acme.pipedrive.com",
            "acme",
            "acme.pipedrive.com",
            "https://acme",
        ]

    def test_bare_key_variants(self):
        variants = identifier_variants("acme")
        assert variants[0] == "acme"
        assert "acme.pipedrive.com" in variants
        assert "https://acme.pipedrive.com" in variants
        assert len(variants) == len(set(variants))

    def test_none_has_no_variants(self):
        assert identifier_variants(None) == []


class TestIdentifierMatches:

    def test_key_equality(self):
        assert identifier_matches("acme", "acme.pipedrive.com", None, None)

    def test_domain_substring_either_direction(self):
        assert identifier_matches("acme", "tenant-1", "acmecorp", None)
        assert identifier_matches("acmecorp-eu", "tenant-1", "acmecorp", None)

    def test_alternate_id_equality(self):
        assert identifier_matches("12345", "acme", "acme", "12345")

    def test_no_match(self):
        assert not identifier_matches("globex", "acme", "acme", "12345")
        assert not identifier_matches("", "acme", "acme", None)


def test_is_numeric_identifier():
    assert is_numeric_identifier("12345")
    assert is_numeric_identifier(12345)
    assert not is_numeric_identifier("acme")
    assert not is_numeric_identifier(None)
