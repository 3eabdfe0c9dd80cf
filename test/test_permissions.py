import pytest

from islapos.errors import Forbidden
from islapos.permissions import AdminAction, AuthorizationPolicy
from islapos.security import Requester


def requester_for(user):
    return Requester(user=user, role=user.role)


@pytest.fixture
def policy(session, identity):
    return AuthorizationPolicy(session, identity)


@pytest.mark.parametrize("role", ["cashier", "kitchen", "maintenance", "driver", "security"])
@pytest.mark.parametrize("action", list(AdminAction))
def test_restricted_roles_are_denied_everything(policy, identity, restaurant, role, action):
    user = identity.add_user(role=role, restaurant_id=restaurant.id)
    decision = policy.authorize(requester_for(user), restaurant.id, action)
    assert not decision.allowed
    assert decision.reason.startswith(f"{role.capitalize()} accounts cannot")


def test_manager_allowed_for_bound_restaurant(policy, manager, restaurant):
    assert policy.authorize(requester_for(manager), restaurant.id, AdminAction.FLOOR_EDIT).allowed


def test_manager_denied_for_other_restaurant(policy, manager, other_restaurant):
    decision = policy.authorize(requester_for(manager), other_restaurant.id, AdminAction.STAFF_INVITE)
    assert not decision.allowed
    assert decision.reason == "Managers can only invite staff for their assigned restaurant"


def test_manager_binding_is_read_fresh(policy, identity, manager, restaurant, other_restaurant):
    # The token still says `restaurant`, the provider has since moved the manager.
    stale = requester_for(identity.get_user(f"token-{manager.id}"))
    identity.users[manager.id].app_metadata["restaurant_id"] = other_restaurant.id
    assert not policy.authorize(stale, restaurant.id, AdminAction.ORDERS_DELETE).allowed


def test_manager_lookup_failure_denies(policy, identity, manager, restaurant):
    identity.fail_lookup.add(manager.id)
    decision = policy.authorize(requester_for(manager), restaurant.id, AdminAction.FLOOR_EDIT)
    assert not decision.allowed


def test_manager_cannot_wipe(policy, manager, restaurant):
    decision = policy.authorize(requester_for(manager), restaurant.id, AdminAction.FULL_WIPE)
    assert not decision.allowed
    assert decision.reason == "Only the restaurant owner can perform a full wipe"


def test_owner_allowed_for_owned_restaurant(policy, owner, restaurant):
    for action in AdminAction:
        assert policy.authorize(requester_for(owner), restaurant.id, action).allowed


def test_owner_denied_for_foreign_restaurant(policy, owner, other_restaurant):
    decision = policy.authorize(requester_for(owner), other_restaurant.id, AdminAction.FLOOR_EDIT)
    assert decision.reason == "Only the restaurant owner or manager can edit the floor plan"


def test_missing_restaurant(policy, owner):
    decision = policy.authorize(requester_for(owner), "missing", AdminAction.FLOOR_EDIT)
    assert decision.reason == "Restaurant not found"


def test_require_raises_forbidden(policy, owner, other_restaurant):
    with pytest.raises(Forbidden) as exc_info:
        policy.require(requester_for(owner), other_restaurant.id, AdminAction.SUPPORT_ACCESS)
    assert exc_info.value.status_code == 403
