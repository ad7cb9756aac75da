import uuid

import pytest

from app.common.exception import AccessDenied, BillingValidationError, SubscriptionInactive, TierLimitExceeded
from app.common.site_enums import GatedResource, NotificationType, SubscriptionStatus, UserRole
from app.data.subscription import create_subscription_plan
from app.data.user import User
from app.model.restaurant import CategoryCreate, MenuItemCreate, RestaurantCreate, StaffCreate
from app.service import restaurant as restaurant_service
from app.service.staff import create_staff, list_staff
from app.service.tier_gate import TierGate, resolve_owner_id


@pytest.fixture
async def bronze_owner(db, plans, make_user, make_subscription):
    owner = await make_user()
    await make_subscription(owner, plans["bronze"])
    return owner


@pytest.fixture
async def bronze_restaurant(db, bronze_owner):
    restaurant = await restaurant_service.create_restaurant(db, bronze_owner, RestaurantCreate(name="Blue Nile Cafe"))
    await db.commit()
    return restaurant


def test_resolve_owner_id(mocker):
    owner_id = uuid.uuid4()
    admin = mocker.Mock(role="admin", user_id=uuid.uuid4())
    owner = mocker.Mock(role="owner", user_id=owner_id)
    staff = mocker.Mock(role="staff", user_id=uuid.uuid4(), owner_id=owner_id)
    orphan = mocker.Mock(role="staff", user_id=uuid.uuid4(), owner_id=None)

    assert resolve_owner_id(admin) is None
    assert resolve_owner_id(owner) == owner_id
    assert resolve_owner_id(staff) == owner_id
    with pytest.raises(AccessDenied):
        resolve_owner_id(orphan)


async def test_menu_items_up_to_the_limit(db, bronze_owner, bronze_restaurant):
    rid = bronze_restaurant.restaurant_id
    for n in range(3):
        await restaurant_service.create_menu_item(
            db, bronze_owner, rid, MenuItemCreate(name=f"Dish {n}", price_cents=1200)
        )

    with pytest.raises(TierLimitExceeded) as exc:
        await restaurant_service.create_menu_item(db, bronze_owner, rid, MenuItemCreate(name="One too many"))

    assert exc.value.resource == "menu_item"
    assert exc.value.count == 3
    assert exc.value.limit == 3
    assert "Upgrade" in exc.value.reason


async def test_second_restaurant_is_blocked(db, bronze_owner, bronze_restaurant):
    with pytest.raises(TierLimitExceeded) as exc:
        await restaurant_service.create_restaurant(db, bronze_owner, RestaurantCreate(name="Second Place"))
    assert exc.value.resource == "restaurant"


async def test_category_limit_is_per_restaurant(db, bronze_owner, bronze_restaurant):
    rid = bronze_restaurant.restaurant_id
    for name in ("Breakfast", "Lunch"):
        await restaurant_service.create_category(db, bronze_owner, rid, CategoryCreate(name=name))

    with pytest.raises(TierLimitExceeded):
        await restaurant_service.create_category(db, bronze_owner, rid, CategoryCreate(name="Dinner"))


async def test_zero_limit_means_unlimited(db, plans, make_user, make_subscription):
    owner = await make_user()
    await make_subscription(owner, plans["gold"])
    gate = TierGate(db)

    for n in range(5):
        await gate.check(owner, GatedResource.RESTAURANT)
        await restaurant_service.create_restaurant(db, owner, RestaurantCreate(name=f"Branch {n}"))


async def test_admin_is_never_limited(db, make_user):
    admin = await make_user(UserRole.ADMIN)
    # No subscription at all; admins skip the lookup
    await TierGate(db).check(admin, GatedResource.RESTAURANT)


async def test_staff_uses_owner_subscription(db, bronze_owner, bronze_restaurant, make_user):
    rid = bronze_restaurant.restaurant_id
    staff = await make_user(UserRole.STAFF, owner_id=bronze_owner.user_id, restaurant_id=rid)

    for n in range(3):
        await restaurant_service.create_menu_item(db, staff, rid, MenuItemCreate(name=f"Dish {n}"))
    with pytest.raises(TierLimitExceeded):
        await restaurant_service.create_menu_item(db, staff, rid, MenuItemCreate(name="Dish 4"))


async def test_staff_cannot_create_restaurants(db, bronze_owner, bronze_restaurant, make_user):
    staff = await make_user(
        UserRole.STAFF, owner_id=bronze_owner.user_id, restaurant_id=bronze_restaurant.restaurant_id
    )
    with pytest.raises(AccessDenied):
        await restaurant_service.create_restaurant(db, staff, RestaurantCreate(name="Side Hustle"))


async def test_staff_bound_to_other_restaurant(db, plans, make_user, make_subscription):
    owner = await make_user()
    await make_subscription(owner, plans["silver"])
    first = await restaurant_service.create_restaurant(db, owner, RestaurantCreate(name="First"))
    second = await restaurant_service.create_restaurant(db, owner, RestaurantCreate(name="Second"))
    staff = await make_user(UserRole.STAFF, owner_id=owner.user_id, restaurant_id=first.restaurant_id)

    with pytest.raises(AccessDenied):
        await restaurant_service.create_category(db, staff, second.restaurant_id, CategoryCreate(name="Drinks"))


async def test_owner_cannot_touch_other_restaurant(db, bronze_restaurant, plans, make_user, make_subscription):
    intruder = await make_user()
    await make_subscription(intruder, plans["gold"])
    with pytest.raises(AccessDenied):
        await restaurant_service.create_menu_item(
            db, intruder, bronze_restaurant.restaurant_id, MenuItemCreate(name="Sneaky")
        )


async def test_unreadable_features_block_everything(db, make_user, make_subscription):
    broken = await create_subscription_plan(
        db, name="Broken", slug="broken", price_monthly_cents=0, currency="ETB",
        features={"max_restaurants": "many"},
    )
    owner = await make_user()
    await make_subscription(owner, broken)

    with pytest.raises(TierLimitExceeded) as exc:
        await TierGate(db).check(owner, GatedResource.RESTAURANT)
    assert "could not be read" in exc.value.reason


async def test_inactive_subscription_blocks(db, plans, make_user, make_subscription):
    owner = await make_user()
    await make_subscription(owner, plans["gold"], SubscriptionStatus.PAST_DUE)
    with pytest.raises(SubscriptionInactive):
        await TierGate(db).check(owner, GatedResource.RESTAURANT)


async def test_category_check_needs_restaurant(db, bronze_owner):
    with pytest.raises(BillingValidationError):
        await TierGate(db).check(bronze_owner, GatedResource.CATEGORY)


async def test_check_for_user_id(db, bronze_owner, bronze_restaurant):
    gate = TierGate(db)
    with pytest.raises(TierLimitExceeded):
        await gate.check_for_user_id(bronze_owner.user_id, GatedResource.RESTAURANT)
    with pytest.raises(AccessDenied):
        await gate.check_for_user_id(uuid.uuid4(), GatedResource.RESTAURANT)


async def test_menu_item_category_must_match_restaurant(db, plans, make_user, make_subscription):
    owner = await make_user()
    await make_subscription(owner, plans["silver"])
    first = await restaurant_service.create_restaurant(db, owner, RestaurantCreate(name="First"))
    second = await restaurant_service.create_restaurant(db, owner, RestaurantCreate(name="Second"))
    category = await restaurant_service.create_category(db, owner, first.restaurant_id, CategoryCreate(name="Mains"))

    with pytest.raises(BillingValidationError):
        await restaurant_service.create_menu_item(
            db, owner, second.restaurant_id, MenuItemCreate(name="Tibs", category_id=category.category_id)
        )


def test_normalize_slug():
    assert restaurant_service.normalize_slug("  Blue Nile -- Cafe! ") == "blue-nile-cafe"


async def test_create_staff_sends_welcome(db, sink, bronze_owner, bronze_restaurant, fetch_all):
    staff = await create_staff(
        db, sink, bronze_owner, bronze_restaurant.restaurant_id,
        StaffCreate(email="waiter@example.com", full_name="Abebe Kebede"),
    )

    [stored] = await fetch_all(User, user_id=staff.user_id)
    assert stored.role == "staff"
    assert stored.owner_id == bronze_owner.user_id
    assert stored.restaurant_id == bronze_restaurant.restaurant_id
    assert stored.is_active is True

    [welcome] = sink.of_type(NotificationType.STAFF_WELCOME)
    assert welcome["email"] == "waiter@example.com"
    assert welcome["restaurant_name"] == "Blue Nile Cafe"
    assert len(welcome["temporary_password"]) == 12


async def test_staff_limit(db, sink, bronze_owner, bronze_restaurant):
    rid = bronze_restaurant.restaurant_id
    await create_staff(db, sink, bronze_owner, rid, StaffCreate(email="one@example.com", full_name="One"))
    with pytest.raises(TierLimitExceeded):
        await create_staff(db, sink, bronze_owner, rid, StaffCreate(email="two@example.com", full_name="Two"))
    assert len(sink.of_type(NotificationType.STAFF_WELCOME)) == 1


async def test_list_staff_is_owner_only(db, sink, bronze_owner, bronze_restaurant, make_user):
    await create_staff(
        db, sink, bronze_owner, bronze_restaurant.restaurant_id,
        StaffCreate(email="cook@example.com", full_name="Cook"),
    )
    listed = await list_staff(db, bronze_owner)
    assert [s.email for s in listed] == ["cook@example.com"]

    admin = await make_user(UserRole.ADMIN)
    with pytest.raises(AccessDenied):
        await list_staff(db, admin)
