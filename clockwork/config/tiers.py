"""
Tier Registry
Static table of account categories, tier prices, dependent capacity and features
"""

import os
import enum
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

UNLIMITED = -1

# Share of the limit at which "approaching limit" warnings start
NEAR_LIMIT_RATIO = 0.8


class AccountCategory(str, enum.Enum):
    INDIVIDUAL = "individual"
    SPECIALIST = "specialist"
    GYM = "gym"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class TierDefinition:
    """One pricing/capacity bundle"""
    id: str
    name: str
    category: AccountCategory
    price: float
    dependent_limit: int  # UNLIMITED (-1) = no cap
    features: Tuple[str, ...]
    stripe_price_env: str

    @property
    def is_unlimited(self) -> bool:
        return self.dependent_limit == UNLIMITED

    @property
    def allows_dependents(self) -> bool:
        return self.dependent_limit != 0


def _tier(id, name, category, price, limit, features) -> TierDefinition:
    return TierDefinition(
        id=id,
        name=name,
        category=category,
        price=price,
        dependent_limit=limit,
        features=tuple(features),
        stripe_price_env=f"STRIPE_PRICE_{id.upper()}",
    )


# Order inside a category is the upgrade path
_TIERS: List[TierDefinition] = [
    # Individual athletes own no dependents
    _tier("free", "Free Explorer", AccountCategory.INDIVIDUAL, 0, 0, [
        "Basic workout tracking",
        "Community workouts",
        "Basic progress charts",
    ]),
    _tier("solo", "Solo Athlete", AccountCategory.INDIVIDUAL, 14.99, 0, [
        "Unlimited workout tracking",
        "Nutrition tracking",
        "Progress analytics",
    ]),
    _tier("premium", "Premium Solo", AccountCategory.INDIVIDUAL, 29.99, 0, [
        "Everything in Solo",
        "Advanced analytics",
        "Priority support",
        "Export data",
    ]),

    # Specialists / trainers
    _tier("starter", "Starter", AccountCategory.SPECIALIST, 29, 10, [
        "Up to 10 clients",
        "Core features",
        "Email support",
        "Basic analytics",
    ]),
    _tier("professional", "Professional", AccountCategory.SPECIALIST, 79, 50, [
        "Up to 50 clients",
        "All features",
        "Custom branding",
        "Priority support",
        "Advanced analytics",
    ]),
    _tier("scale", "Scale", AccountCategory.SPECIALIST, 149, 150, [
        "Up to 150 clients",
        "API access",
        "White label options",
        "Custom integrations",
    ]),

    # Gyms
    _tier("gym_small", "Gym Starter", AccountCategory.GYM, 299.99, 100, [
        "Up to 100 members",
        "Member check-in system",
        "Class scheduling",
        "Trainer management",
    ]),
    _tier("gym_standard", "Gym Standard", AccountCategory.GYM, 599.99, 500, [
        "Up to 500 members",
        "Advanced analytics",
        "Member app with gym branding",
        "Automated billing",
    ]),
    _tier("gym_premium", "Gym Premium", AccountCategory.GYM, 999.99, 1000, [
        "Up to 1000 members",
        "Multiple location support",
        "API access",
        "Dedicated support",
    ]),

    # Enterprise
    _tier("enterprise", "Enterprise", AccountCategory.ENTERPRISE, 299, UNLIMITED, [
        "Unlimited clients",
        "Multi-specialist accounts",
        "Dedicated support",
        "Custom features",
    ]),
]

TIER_TABLE: Dict[str, TierDefinition] = {tier.id: tier for tier in _TIERS}

DEFAULT_TIERS: Dict[AccountCategory, str] = {
    AccountCategory.INDIVIDUAL: "free",
    AccountCategory.SPECIALIST: "starter",
    AccountCategory.GYM: "gym_small",
    AccountCategory.ENTERPRISE: "enterprise",
}


def get_tier(tier_id: Optional[str]) -> Optional[TierDefinition]:
    """Look up a tier by id"""
    if not tier_id:
        return None
    return TIER_TABLE.get(tier_id)


def list_tiers(category: Optional[AccountCategory] = None) -> List[TierDefinition]:
    """All tiers, optionally filtered by category, cheapest first"""
    tiers = [t for t in _TIERS if category is None or t.category == category]
    return sorted(tiers, key=lambda t: t.price)


def default_tier_for(category: AccountCategory) -> TierDefinition:
    return TIER_TABLE[DEFAULT_TIERS[AccountCategory(category)]]


def get_next_tier(tier_id: str) -> Optional[TierDefinition]:
    """Next tier up in the same category, None at the top"""
    current = get_tier(tier_id)
    if current is None:
        return None
    same_category = [t for t in _TIERS if t.category == current.category]
    index = same_category.index(current)
    if index + 1 < len(same_category):
        return same_category[index + 1]
    return None


def get_price_id(tier: TierDefinition) -> Optional[str]:
    """Stripe price id configured for a tier"""
    return os.getenv(tier.stripe_price_env)


def tier_for_price_id(price_id: Optional[str]) -> Optional[TierDefinition]:
    """Map a Stripe price id back to its tier"""
    if not price_id:
        return None
    for tier in _TIERS:
        if get_price_id(tier) == price_id:
            return tier
    return None


def calculate_usage_percentage(current: int, limit: int) -> float:
    """Calculate usage as percentage of limit"""
    if limit <= 0:
        return 0.0
    return (current / limit) * 100


def is_at_limit(count: int, tier: TierDefinition) -> bool:
    # Individual tiers hold no dependents; slot reservation refuses them instead
    if tier.is_unlimited or not tier.allows_dependents:
        return False
    return count >= tier.dependent_limit


def is_near_limit(count: int, tier: TierDefinition) -> bool:
    if tier.is_unlimited or not tier.allows_dependents:
        return False
    return count >= tier.dependent_limit * NEAR_LIMIT_RATIO


def get_upgrade_message(tier_id: str) -> str:
    """Upgrade prompt for an account on the given tier"""
    next_tier = get_next_tier(tier_id)
    if next_tier is None:
        return "Contact us to extend your plan"
    if next_tier.is_unlimited:
        return f"Upgrade to {next_tier.name} (${next_tier.price:g}/mo) for unlimited capacity"
    return f"Upgrade to {next_tier.name} (${next_tier.price:g}/mo) for up to {next_tier.dependent_limit} clients"
