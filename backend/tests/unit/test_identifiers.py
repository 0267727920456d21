"""
Tests for public identifiers and entity references.

WHAT: Test token generation, classification and resolution
WHY: Public tokens and internal keys must never be confused at lookup time
HOW: Pure checks on generation/parsing, a seeded database for resolution
"""

import pytest

from offer_engine.core.config import settings
from offer_engine.core.identifiers import (
    PUBLIC_ID_ALPHABET,
    InternalRef,
    PublicRef,
    generate_public_id,
    is_valid_public_id,
    parse_ref,
    resolve,
)
from offer_engine.core.models import CatalogListing, CatalogProductVariant


@pytest.mark.unit
class TestPublicIdGeneration:
    """Test public token generation and validation."""

    def test_default_length(self):
        """Generated tokens use the configured length."""
        token = generate_public_id()
        assert len(token) == settings.PUBLIC_ID_LENGTH

    def test_alphabet_has_no_ambiguous_characters(self):
        """Tokens avoid 0/O and 1/l/I."""
        for ch in "0O1lI":
            assert ch not in PUBLIC_ID_ALPHABET

    def test_tokens_only_use_alphabet(self):
        """Every character comes from the public alphabet."""
        for _ in range(20):
            assert all(ch in PUBLIC_ID_ALPHABET for ch in generate_public_id())

    def test_tokens_are_unique(self):
        """Collisions are practically impossible."""
        tokens = {generate_public_id() for _ in range(500)}
        assert len(tokens) == 500

    def test_custom_length(self):
        """Explicit length overrides the default."""
        assert len(generate_public_id(8)) == 8

    def test_validation(self):
        """Only well-formed tokens validate."""
        assert is_valid_public_id(generate_public_id()) is True
        assert is_valid_public_id(None) is False
        assert is_valid_public_id("") is False
        assert is_valid_public_id("short") is False
        assert is_valid_public_id("0" * settings.PUBLIC_ID_LENGTH) is False


@pytest.mark.unit
class TestParseRef:
    """Test boundary classification of raw identifiers."""

    def test_public_token_becomes_public_ref(self):
        """Well-formed tokens are public references."""
        token = generate_public_id()
        ref = parse_ref(token)
        assert isinstance(ref, PublicRef)
        assert str(ref) == token

    def test_uuid_becomes_internal_ref(self):
        """UUID keys are internal references."""
        ref = parse_ref("9b2f3c1e-5d4a-4e8b-9c7d-1a2b3c4d5e6f")
        assert isinstance(ref, InternalRef)
        assert ref.key == "9b2f3c1e-5d4a-4e8b-9c7d-1a2b3c4d5e6f"

    def test_already_tagged_refs_pass_through(self):
        """Parsing a reference returns it unchanged."""
        public = PublicRef("x")
        internal = InternalRef("y")
        assert parse_ref(public) is public
        assert parse_ref(internal) is internal


@pytest.mark.integration
class TestResolve:
    """Test resolving references against storage."""

    def test_resolve_by_public_id(self, transaction, marketplace):
        """Public references match on public_id."""
        with transaction() as db:
            listing = resolve(db, CatalogListing, parse_ref(marketplace.listing_id))
            assert listing is not None
            assert listing.public_id == marketplace.listing_id

    def test_resolve_by_internal_key(self, transaction, marketplace):
        """Internal references match on the primary key."""
        with transaction() as db:
            variant = resolve(db, CatalogProductVariant, parse_ref(marketplace.variant_ids[0]))
            again = resolve(db, CatalogProductVariant, InternalRef(variant.catalog_product_variant_id))
            assert again is variant

    def test_resolve_missing(self, transaction, marketplace):
        """Unknown references resolve to None."""
        with transaction() as db:
            assert resolve(db, CatalogListing, parse_ref(generate_public_id())) is None
            assert resolve(db, CatalogListing, InternalRef("missing")) is None

    def test_resolve_rejects_untagged_values(self, transaction):
        """Raw strings must be classified first."""
        with transaction() as db:
            with pytest.raises(TypeError):
                resolve(db, CatalogListing, "raw-string")
