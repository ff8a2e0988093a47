# nutrizen/tests/test_auth_service.py
import asyncio
from types import SimpleNamespace

import pytest

from nutrizen.services.auth_service import AuthService


@pytest.mark.asyncio
async def test_token_resolution(fake_db):
    fake_db.auth.tokens["good"] = SimpleNamespace(id="u-1", email="a@b.fr")
    svc = AuthService(client=fake_db)

    user = await svc.get_user_from_token("good")
    assert user.id == "u-1"
    assert user.access_token == "good"

    assert await svc.get_user_from_token("bad") is None
    assert await svc.get_user_from_token(None) is None


@pytest.mark.asyncio
async def test_concurrent_admin_checks_share_one_query(fake_db):
    fake_db.seed("user_roles", {"user_id": "admin-1", "role": "admin"})
    svc = AuthService(client=fake_db)

    results = await asyncio.gather(*(svc.is_admin("admin-1") for _ in range(5)))

    assert results == [True] * 5
    selects = [e for e in fake_db.executed if e[:2] == ("user_roles", "select")]
    assert len(selects) == 1
    assert svc._admin_checks == {}


@pytest.mark.asyncio
async def test_non_admin_and_failed_lookup_are_denied(fake_db):
    fake_db.seed("user_roles", {"user_id": "u-2", "role": "member"})
    svc = AuthService(client=fake_db)
    assert await svc.is_admin("u-2") is False
    assert await svc.is_admin(None) is False

    fake_db.fail("user_roles", RuntimeError("connection reset"))
    assert await svc.is_admin("u-3") is False


@pytest.mark.asyncio
async def test_subscription_status(fake_db, user):
    svc = AuthService(client=fake_db)
    default = await svc.get_subscription(user)
    assert default.subscribed is False
    assert default.status == "trialing"

    fake_db.seed("subscriptions", {"user_id": user.id, "status": "active", "plan": "premium"})
    info = await svc.get_subscription(user)
    assert info.subscribed is True
    assert info.plan == "premium"
