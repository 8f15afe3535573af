"""
Tier table lookups and limit arithmetic
"""
from clockwork.config.tiers import (
    AccountCategory,
    TIER_TABLE,
    UNLIMITED,
    calculate_usage_percentage,
    default_tier_for,
    get_next_tier,
    get_price_id,
    get_tier,
    get_upgrade_message,
    is_at_limit,
    is_near_limit,
    list_tiers,
    tier_for_price_id,
)


def test_table_covers_every_category():
    categories = {tier.category for tier in TIER_TABLE.values()}
    assert categories == set(AccountCategory)


def test_specialist_limits():
    assert get_tier("starter").dependent_limit == 10
    assert get_tier("professional").dependent_limit == 50
    assert get_tier("scale").dependent_limit == 150
    assert get_tier("enterprise").dependent_limit == UNLIMITED
    assert get_tier("enterprise").is_unlimited


def test_unknown_tier():
    assert get_tier("platinum") is None
    assert get_tier(None) is None


def test_list_tiers_by_category_sorted_by_price():
    tiers = list_tiers(AccountCategory.GYM)
    assert [t.id for t in tiers] == ["gym_small", "gym_standard", "gym_premium"]
    prices = [t.price for t in list_tiers()]
    assert prices == sorted(prices)


def test_next_tier_stays_in_category():
    assert get_next_tier("starter").id == "professional"
    assert get_next_tier("professional").id == "scale"
    assert get_next_tier("scale") is None
    assert get_next_tier("gym_small").id == "gym_standard"


def test_default_tiers():
    assert default_tier_for(AccountCategory.SPECIALIST).id == "starter"
    assert default_tier_for("gym").id == "gym_small"
    assert default_tier_for(AccountCategory.INDIVIDUAL).id == "free"


def test_price_ids_come_from_environment():
    starter = get_tier("starter")
    assert get_price_id(starter) == "price_starter"
    assert tier_for_price_id("price_professional").id == "professional"
    assert tier_for_price_id("price_unknown") is None
    assert tier_for_price_id(None) is None


def test_usage_percentage():
    assert calculate_usage_percentage(5, 10) == 50
    assert calculate_usage_percentage(3, UNLIMITED) == 0
    assert calculate_usage_percentage(0, 0) == 0


def test_limit_checks():
    starter = get_tier("starter")
    assert not is_at_limit(9, starter)
    assert is_at_limit(10, starter)
    assert is_at_limit(12, starter)
    assert not is_near_limit(7, starter)
    assert is_near_limit(8, starter)

    enterprise = get_tier("enterprise")
    assert not is_at_limit(100000, enterprise)
    assert not is_near_limit(100000, enterprise)


def test_upgrade_message_names_next_tier():
    assert "Professional" in get_upgrade_message("starter")
    assert "50" in get_upgrade_message("starter")
    assert get_upgrade_message("enterprise") == "Contact us to extend your plan"


def test_individual_tiers_are_never_at_limit():
    free = get_tier("free")
    assert not free.allows_dependents
    assert not is_at_limit(0, free)
    assert not is_near_limit(0, free)
