"""Tests for the subscription state machine."""
from datetime import timedelta
from types import SimpleNamespace

import pytest

from creditgate.core.errors import NotFoundError, ValidationError
from creditgate.features.subscriptions.service import SubscriptionService
from creditgate.models.subscription import SubscriptionState, SubscriptionStatus, state_of
from creditgate.tests.fakes import TEST_PRO_PLAN_ID


@pytest.fixture
def subscribed(services, gateway, make_user, clock):
    """User with an active pro subscription for [now, now + 30d)."""
    user = make_user()
    created = services.subscriptions.create(user.id, "pro")
    start = clock()
    gateway.set_period(created.provider_subscription_id, start, start + timedelta(days=30))
    services.subscriptions.activate(user.id, created.provider_subscription_id, "pro")
    return SimpleNamespace(user=user, sub_id=created.provider_subscription_id, start=start, end=start + timedelta(days=30))


def test_create_rejects_free_plan(services, make_user, gateway):
    user = make_user()
    with pytest.raises(ValidationError):
        services.subscriptions.create(user.id, "basic")
    assert gateway.subscriptions == {}
    assert gateway.customer_calls == 0


def test_create_rejects_unknown_plan(services, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        services.subscriptions.create(user.id, "enterprise")


def test_create_requires_configured_provider_plan(services, make_user, gateway):
    svc = SubscriptionService(
        gateway,
        services.ledger,
        SimpleNamespace(RAZORPAY_PRO_PLAN_ID=None, SUBSCRIPTION_TOTAL_CYCLES=12),
    )
    user = make_user()
    with pytest.raises(ValidationError):
        svc.create(user.id, "pro")


def test_create_records_pending_subscription_and_customer(services, make_user, gateway):
    user = make_user(email="pat@example.com")

    created = services.subscriptions.create(user.id, "pro")

    assert created.provider_plan_id == TEST_PRO_PLAN_ID
    sub = services.subscriptions.get_subscription(user.id)
    assert sub.status == SubscriptionStatus.PENDING
    assert sub.provider_subscription_id == created.provider_subscription_id
    assert sub.state == SubscriptionState.PENDING
    stored = services.users.get(user.id)
    assert stored.provider_customer_id == gateway.customers["pat@example.com"]


def test_second_create_reuses_customer_and_replaces_pending(services, make_user, gateway):
    user = make_user()
    first = services.subscriptions.create(user.id, "pro")
    second = services.subscriptions.create(user.id, "pro")

    assert gateway.customer_calls == 1
    assert first.provider_subscription_id != second.provider_subscription_id
    sub = services.subscriptions.get_subscription(user.id)
    assert sub.provider_subscription_id == second.provider_subscription_id
    assert sub.status == SubscriptionStatus.PENDING


def test_activate_grants_plan_allotment_to_fresh_user(services, subscribed):
    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_start == subscribed.start
    assert sub.current_period_end == subscribed.end
    assert sub.cancel_at_period_end is False

    balance = services.ledger.get_balance(subscribed.user.id)
    assert balance.credits == 500
    assert balance.monthly_limit == 500
    assert balance.reset_at == subscribed.end
    assert balance.plan_slug == "pro"


def test_activate_is_idempotent_for_same_period(services, subscribed):
    services.subscriptions.activate(subscribed.user.id, subscribed.sub_id, "pro")
    services.subscriptions.activate(subscribed.user.id, subscribed.sub_id, "pro")

    assert services.ledger.get_balance(subscribed.user.id).credits == 500


def test_activate_upgrade_is_additive(services, gateway, make_user, clock):
    user = make_user()
    services.ledger.sync(user.id)
    services.ledger.deduct(user.id, 3)

    created = services.subscriptions.create(user.id, "pro")
    gateway.set_period(created.provider_subscription_id, clock(), clock() + timedelta(days=30))
    services.subscriptions.activate(user.id, created.provider_subscription_id, "pro")

    balance = services.ledger.get_balance(user.id)
    assert balance.credits == 507
    assert balance.monthly_limit == 510


def test_activate_uses_gateway_bounds_fallback(services, make_user, clock):
    user = make_user()
    created = services.subscriptions.create(user.id, "pro")

    services.subscriptions.activate(user.id, created.provider_subscription_id, "pro")

    sub = services.subscriptions.get_subscription(user.id)
    assert sub.current_period_start == clock()
    assert sub.current_period_end.month == 2
    # no bounds from the gateway: a repeat must not grant again
    services.subscriptions.activate(user.id, created.provider_subscription_id, "pro")
    assert services.ledger.get_balance(user.id).credits == 500


def test_activate_rejects_plan_mismatch(services, gateway, make_user, clock):
    user = make_user()
    gateway.add_subscription("sub_other_plan", plan_id="plan_enterprise", email=user.email)
    gateway.set_period("sub_other_plan", clock(), clock() + timedelta(days=30))

    with pytest.raises(ValidationError):
        services.subscriptions.activate(user.id, "sub_other_plan", "pro")
    assert services.subscriptions.get_subscription(user.id) is None


def test_activate_rejects_another_users_subscription(services, subscribed, make_user, gateway):
    intruder = make_user()
    # strip the email note so the ownership check has to come from the local row
    gateway.subscriptions[subscribed.sub_id].notes = {}

    with pytest.raises(ValidationError):
        services.subscriptions.activate(intruder.id, subscribed.sub_id, "pro")
    assert services.ledger.get_balance(intruder.id).credits == 0


def test_activate_rejects_subscription_created_for_other_email(services, gateway, make_user, clock):
    user = make_user()
    gateway.add_subscription("sub_foreign", email="someone-else@example.com")
    gateway.set_period("sub_foreign", clock(), clock() + timedelta(days=30))

    with pytest.raises(ValidationError):
        services.subscriptions.activate(user.id, "sub_foreign", "pro")


def test_cancel_at_period_end_keeps_subscription_active(services, subscribed, gateway):
    sub = services.subscriptions.cancel(subscribed.user.id, at_period_end=True)

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.cancel_at_period_end is True
    assert sub.state == SubscriptionState.CANCEL_PENDING
    assert gateway.cancellations == [(subscribed.sub_id, True)]


def test_repeat_cancel_at_period_end_does_not_call_gateway_again(services, subscribed, gateway):
    services.subscriptions.cancel(subscribed.user.id, at_period_end=True)
    services.subscriptions.cancel(subscribed.user.id, at_period_end=True)
    assert gateway.cancellations == [(subscribed.sub_id, True)]


def test_cancel_immediately_then_sync_demotes(services, subscribed, gateway):
    sub = services.subscriptions.cancel(subscribed.user.id, at_period_end=False)

    assert sub.status == SubscriptionStatus.CANCELLED
    assert gateway.cancellations == [(subscribed.sub_id, False)]

    balance = services.ledger.sync(subscribed.user.id)
    assert balance.monthly_limit == 10
    assert balance.credits == 10

    with pytest.raises(NotFoundError):
        services.subscriptions.cancel(subscribed.user.id, at_period_end=False)


def test_cancel_without_subscription_fails(services, make_user, gateway):
    user = make_user()
    with pytest.raises(NotFoundError):
        services.subscriptions.cancel(user.id)
    assert gateway.cancellations == []


def test_renew_advances_period_and_resets_credits(services, subscribed, gateway):
    services.ledger.deduct(subscribed.user.id, 120)
    new_end = subscribed.end + timedelta(days=30)
    gateway.set_period(subscribed.sub_id, subscribed.end, new_end)

    assert services.subscriptions.renew(subscribed.sub_id) is True

    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.current_period_start == subscribed.end
    assert sub.current_period_end == new_end
    balance = services.ledger.get_balance(subscribed.user.id)
    assert (balance.credits, balance.monthly_limit) == (500, 500)
    assert balance.reset_at == new_end


def test_renew_replay_is_noop(services, subscribed, gateway):
    gateway.set_period(subscribed.sub_id, subscribed.end, subscribed.end + timedelta(days=30))
    assert services.subscriptions.renew(subscribed.sub_id) is True
    services.ledger.deduct(subscribed.user.id, 50)

    assert services.subscriptions.renew(subscribed.sub_id) is False
    assert services.ledger.get_balance(subscribed.user.id).credits == 450


def test_renew_with_current_period_is_noop(services, subscribed):
    services.ledger.deduct(subscribed.user.id, 10)
    assert services.subscriptions.renew(subscribed.sub_id) is False
    assert services.ledger.get_balance(subscribed.user.id).credits == 490


def test_renew_unknown_subscription(services):
    with pytest.raises(NotFoundError):
        services.subscriptions.renew("sub_missing")


def test_renew_activates_pending_subscription(services, gateway, make_user, clock):
    user = make_user()
    created = services.subscriptions.create(user.id, "pro")
    gateway.set_period(created.provider_subscription_id, clock(), clock() + timedelta(days=30))

    assert services.subscriptions.renew(created.provider_subscription_id) is True

    assert services.subscriptions.get_subscription(user.id).status == SubscriptionStatus.ACTIVE
    assert services.ledger.get_balance(user.id).credits == 500


def test_expire_cancels_once(services, subscribed):
    assert services.subscriptions.expire(subscribed.sub_id) is True
    assert services.subscriptions.expire(subscribed.sub_id) is False
    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.cancel_at_period_end is False


def test_expire_lapsed_only_after_period_end(services, subscribed, clock):
    services.subscriptions.cancel(subscribed.user.id, at_period_end=True)

    assert services.subscriptions.expire_lapsed() == 0
    clock.advance(timedelta(days=31))
    assert services.subscriptions.expire_lapsed() == 1

    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.status == SubscriptionStatus.CANCELLED


def test_resubscribe_after_cancellation_starts_pending(services, subscribed):
    services.subscriptions.cancel(subscribed.user.id, at_period_end=False)
    created = services.subscriptions.create(subscribed.user.id, "pro")

    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.status == SubscriptionStatus.PENDING
    assert sub.provider_subscription_id == created.provider_subscription_id
    assert sub.current_period_end is None


def test_create_while_active_is_rejected(services, subscribed, gateway):
    known = set(gateway.subscriptions)

    with pytest.raises(ValidationError):
        services.subscriptions.create(subscribed.user.id, "pro")

    assert set(gateway.subscriptions) == known
    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.provider_subscription_id == subscribed.sub_id


def test_create_while_cancel_pending_replaces_on_activation(services, subscribed, gateway, clock):
    services.subscriptions.cancel(subscribed.user.id, at_period_end=True)
    created = services.subscriptions.create(subscribed.user.id, "pro")

    # the cancel-pending subscription stays in force until the new one is paid
    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.provider_subscription_id == subscribed.sub_id
    assert sub.state == SubscriptionState.CANCEL_PENDING

    gateway.set_period(created.provider_subscription_id, clock(), clock() + timedelta(days=30))
    services.subscriptions.activate(subscribed.user.id, created.provider_subscription_id, "pro")

    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.provider_subscription_id == created.provider_subscription_id
    assert sub.state == SubscriptionState.ACTIVE
    assert gateway.cancellations == [(subscribed.sub_id, True)]


def test_activate_cancels_replaced_live_subscription(services, gateway, make_user, clock):
    user = make_user()
    first = services.subscriptions.create(user.id, "pro")
    second = services.subscriptions.create(user.id, "pro")
    for created in (first, second):
        gateway.set_period(created.provider_subscription_id, clock(), clock() + timedelta(days=30))

    services.subscriptions.activate(user.id, first.provider_subscription_id, "pro")
    services.subscriptions.activate(user.id, second.provider_subscription_id, "pro")

    assert gateway.cancellations == [(first.provider_subscription_id, False)]
    assert gateway.subscriptions[first.provider_subscription_id].status == "cancelled"
    sub = services.subscriptions.get_subscription(user.id)
    assert sub.provider_subscription_id == second.provider_subscription_id
    assert sub.status == SubscriptionStatus.ACTIVE


def test_renew_after_boundary_sync_does_not_grant_twice(services, subscribed, gateway, clock):
    services.ledger.deduct(subscribed.user.id, 100)
    clock.advance(timedelta(days=31))

    # a request at the boundary runs the monthly reset before the charge notice lands
    assert services.ledger.sync(subscribed.user.id).credits == 500
    services.ledger.deduct(subscribed.user.id, 50)

    new_end = subscribed.end + timedelta(days=30)
    gateway.set_period(subscribed.sub_id, subscribed.end, new_end)
    assert services.subscriptions.renew(subscribed.sub_id) is True

    assert services.subscriptions.get_subscription(subscribed.user.id).current_period_end == new_end
    assert services.ledger.get_balance(subscribed.user.id).credits == 450


def test_renew_never_extends_cancel_pending_subscription(services, subscribed, gateway):
    services.subscriptions.cancel(subscribed.user.id, at_period_end=True)
    services.ledger.deduct(subscribed.user.id, 100)
    gateway.set_period(subscribed.sub_id, subscribed.end, subscribed.end + timedelta(days=30))

    assert services.subscriptions.renew(subscribed.sub_id) is False

    sub = services.subscriptions.get_subscription(subscribed.user.id)
    assert sub.state == SubscriptionState.CANCEL_PENDING
    assert sub.current_period_end == subscribed.end
    assert services.ledger.get_balance(subscribed.user.id).credits == 400


def test_state_of_without_row():
    assert state_of(None) == SubscriptionState.NONE
