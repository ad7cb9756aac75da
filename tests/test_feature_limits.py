import pytest

from app.common.site_enums import GatedResource
from app.model.subscription import FeatureLimits


def test_decode_from_dict():
    limits = FeatureLimits.decode({"max_restaurants": 2, "max_menu_items": 40, "analytics_enabled": True})
    assert limits.max_restaurants == 2
    assert limits.max_menu_items == 40
    assert limits.analytics_enabled is True
    assert limits.max_staff_accounts == 0
    assert limits.decode_failed is False


def test_decode_from_json_string():
    limits = FeatureLimits.decode('{"max_categories": 7, "activity_log_days": 30}')
    assert limits.max_categories == 7
    assert limits.activity_log_days == 30
    assert limits.decode_failed is False


def test_decode_ignores_unknown_keys():
    limits = FeatureLimits.decode({"max_staff_accounts": 3, "custom_domain": True})
    assert limits.max_staff_accounts == 3
    assert limits.decode_failed is False


@pytest.mark.parametrize("raw", [None, "not json", "[1, 2, 3]", {"max_menu_items": "lots"}])
def test_decode_failure_is_flagged(raw):
    limits = FeatureLimits.decode(raw)
    assert limits.decode_failed is True
    assert limits.max_restaurants == 0
    assert limits.max_menu_items == 0


def test_decode_failed_flag_is_not_serialized():
    limits = FeatureLimits.decode(None)
    assert "decode_failed" not in limits.model_dump()


def test_limit_for_each_resource():
    limits = FeatureLimits(max_restaurants=1, max_categories=2, max_menu_items=3, max_staff_accounts=4)
    assert limits.limit_for(GatedResource.RESTAURANT) == 1
    assert limits.limit_for(GatedResource.CATEGORY) == 2
    assert limits.limit_for(GatedResource.MENU_ITEM) == 3
    assert limits.limit_for(GatedResource.STAFF) == 4
