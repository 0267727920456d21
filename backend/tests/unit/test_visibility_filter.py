"""
Tests for private listing visibility filtering.

WHAT: Test inclusion/exclusion rule evaluation for buyers
WHY: Buyers outside a private catalog's audience must not make offers on it
HOW: Evaluate the default predicate against transient rule rows
"""

import pytest

from offer_engine.core.models import (
    Address, BuyerProfile, ListingVisibilityRule, VisibilityRuleType,
)
from offer_engine.services.visibility_filter import (
    BuyerVisibilityContext,
    allow_all,
    rule_based_visibility,
    rule_matches,
)


def rule(rule_type, value, inclusion=True):
    return ListingVisibilityRule(rule_type=rule_type, rule_value=value, is_inclusion=inclusion)


@pytest.fixture
def texas_retail_buyer():
    return BuyerVisibilityContext(
        user_id="buyer-1",
        buyer_segment="retail",
        country="US",
        state="TX",
        city="Austin",
        zip_code="73301",
    )


@pytest.mark.unit
class TestRuleMatching:
    """Test single rule checks."""

    def test_segment_match_is_case_insensitive(self, texas_retail_buyer):
        """Segment values compare without case or padding."""
        assert rule_matches(texas_retail_buyer, rule(VisibilityRuleType.BUYER_SEGMENT, " RETAIL ")) is True

    def test_location_rules(self, texas_retail_buyer):
        """Each location rule type reads its own attribute."""
        assert rule_matches(texas_retail_buyer, rule(VisibilityRuleType.LOCATION_COUNTRY, "us"))
        assert rule_matches(texas_retail_buyer, rule(VisibilityRuleType.LOCATION_STATE, "TX"))
        assert rule_matches(texas_retail_buyer, rule(VisibilityRuleType.LOCATION_CITY, "austin"))
        assert rule_matches(texas_retail_buyer, rule(VisibilityRuleType.LOCATION_ZIP, "73301"))
        assert not rule_matches(texas_retail_buyer, rule(VisibilityRuleType.LOCATION_STATE, "CA"))

    def test_missing_attribute_never_matches(self):
        """Buyers without an address match no location rule."""
        context = BuyerVisibilityContext(user_id="buyer-2", buyer_segment="retail")
        assert rule_matches(context, rule(VisibilityRuleType.LOCATION_COUNTRY, "US")) is False


@pytest.mark.unit
class TestRuleBasedVisibility:
    """Test the default visibility predicate."""

    def test_no_rules_allows(self, texas_retail_buyer):
        """Private listing without rules is open."""
        assert rule_based_visibility(texas_retail_buyer, []) is True

    def test_inclusion_match_allows(self, texas_retail_buyer):
        """Matching an inclusion rule grants access."""
        rules = [rule(VisibilityRuleType.BUYER_SEGMENT, "retail")]
        assert rule_based_visibility(texas_retail_buyer, rules) is True

    def test_inclusion_miss_denies(self, texas_retail_buyer):
        """Inclusion rules restrict access to their audience."""
        rules = [rule(VisibilityRuleType.BUYER_SEGMENT, "wholesale")]
        assert rule_based_visibility(texas_retail_buyer, rules) is False

    def test_exclusion_match_denies(self, texas_retail_buyer):
        """Matching an exclusion rule blocks access."""
        rules = [rule(VisibilityRuleType.LOCATION_STATE, "TX", inclusion=False)]
        assert rule_based_visibility(texas_retail_buyer, rules) is False

    def test_exclusion_miss_allows(self, texas_retail_buyer):
        """Only-exclusion listings are open to everyone else."""
        rules = [rule(VisibilityRuleType.LOCATION_STATE, "CA", inclusion=False)]
        assert rule_based_visibility(texas_retail_buyer, rules) is True

    def test_inclusion_wins_over_exclusion(self, texas_retail_buyer):
        """An inclusion match is checked before exclusions."""
        rules = [
            rule(VisibilityRuleType.BUYER_SEGMENT, "retail"),
            rule(VisibilityRuleType.LOCATION_STATE, "TX", inclusion=False),
        ]
        assert rule_based_visibility(texas_retail_buyer, rules) is True

    def test_allow_all(self, texas_retail_buyer):
        """Permissive predicate ignores rules."""
        rules = [rule(VisibilityRuleType.BUYER_SEGMENT, "wholesale")]
        assert allow_all(texas_retail_buyer, rules) is True


@pytest.mark.unit
class TestContextFromProfile:
    """Test building the buyer context."""

    def test_from_profile_with_address(self):
        """Address fields feed the location attributes."""
        profile = BuyerProfile(user_id="u1", buyer_segment="retail")
        address = Address(user_id="u1", line1="1 Main", city="Austin", state="TX", zip_code="73301", country="US")

        context = BuyerVisibilityContext.from_profile(profile, address)

        assert context.user_id == "u1"
        assert context.buyer_segment == "retail"
        assert context.country == "US"
        assert context.city == "Austin"

    def test_from_profile_without_address(self):
        """No address leaves location attributes empty."""
        context = BuyerVisibilityContext.from_profile(BuyerProfile(user_id="u1"))
        assert context.country is None
        assert context.zip_code is None
