"""
Visibility filtering for private catalog listings.

WHAT: Decide whether a buyer may see (and therefore make offers on) a private listing
WHY: Sellers scope private catalogs to buyer segments or locations
HOW: Pluggable predicate over buyer attributes vs. listing inclusion/exclusion rules
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from ..core.models import ListingVisibilityRule, VisibilityRuleType, BuyerProfile, Address
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BuyerVisibilityContext:
    """Buyer attributes visibility rules can match on."""
    user_id: str
    buyer_segment: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: BuyerProfile, address: Optional[Address] = None) -> "BuyerVisibilityContext":
        return cls(
            user_id=profile.user_id,
            buyer_segment=profile.buyer_segment,
            country=address.country if address else None,
            state=address.state if address else None,
            city=address.city if address else None,
            zip_code=address.zip_code if address else None,
        )


VisibilityPredicate = Callable[[BuyerVisibilityContext, Sequence[ListingVisibilityRule]], bool]


def _attribute_for(context: BuyerVisibilityContext, rule_type: VisibilityRuleType) -> Optional[str]:
    if rule_type == VisibilityRuleType.BUYER_SEGMENT:
        return context.buyer_segment
    elif rule_type == VisibilityRuleType.LOCATION_COUNTRY:
        return context.country
    elif rule_type == VisibilityRuleType.LOCATION_STATE:
        return context.state
    elif rule_type == VisibilityRuleType.LOCATION_CITY:
        return context.city
    elif rule_type == VisibilityRuleType.LOCATION_ZIP:
        return context.zip_code
    raise ValueError(f"Unhandled visibility rule type: {rule_type}")


def rule_matches(context: BuyerVisibilityContext, rule: ListingVisibilityRule) -> bool:
    """
    Check a single rule against the buyer.

    Args:
        context: Buyer attributes
        rule: Listing rule

    Returns:
        True if the buyer's attribute equals the rule value (case-insensitive)
    """
    value = _attribute_for(context, rule.rule_type)
    if value is None:
        return False
    return value.strip().lower() == rule.rule_value.strip().lower()


def rule_based_visibility(context: BuyerVisibilityContext, rules: Sequence[ListingVisibilityRule]) -> bool:
    """
    Default visibility predicate.

    WHAT: Evaluate inclusion/exclusion rules for one buyer
    WHY: Private listings are open only to the audience the seller configured
    HOW: No rules allow; inclusion match allows; exclusion match denies;
         otherwise allow only when no inclusion rules exist

    Args:
        context: Buyer attributes
        rules: All rules attached to the listing

    Returns:
        True if the buyer may access the listing
    """
    if not rules:
        return True

    inclusion_rules: List[ListingVisibilityRule] = [r for r in rules if r.is_inclusion]
    exclusion_rules: List[ListingVisibilityRule] = [r for r in rules if not r.is_inclusion]

    if any(rule_matches(context, rule) for rule in inclusion_rules):
        return True
    if any(rule_matches(context, rule) for rule in exclusion_rules):
        logger.debug(f"Buyer {context.user_id} matched an exclusion rule")
        return False

    return not inclusion_rules


def allow_all(context: BuyerVisibilityContext, rules: Sequence[ListingVisibilityRule]) -> bool:
    """Permissive predicate for deployments without private catalogs."""
    return True
