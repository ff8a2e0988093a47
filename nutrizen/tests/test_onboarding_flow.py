# nutrizen/tests/test_onboarding_flow.py
from unittest.mock import AsyncMock

import pytest

from nutrizen.models.onboarding import OnboardingStatus
from nutrizen.services.onboarding_service import (
    DASHBOARD_PATH,
    ONBOARDING_PATH,
    OnboardingGuard,
    OnboardingService,
    OnboardingStatusCache,
    is_onboarded_cached,
)
from nutrizen.tests.conftest import api_error

USER_ID = "user-onb"


@pytest.mark.asyncio
async def test_completed_at_is_the_only_source_of_truth(fake_db):
    # legacy flag says completed but the timestamp is NULL
    fake_db.seed(
        "profiles",
        {"id": USER_ID, "onboarding_completed_at": None, "onboarding_completed": True, "onboarding_step": 4},
    )
    svc = OnboardingService(client=fake_db)

    status = await svc.get_onboarding_status(USER_ID)

    assert status.state == "needs_onboarding"
    assert status.step == 4
    assert is_onboarded_cached(USER_ID) is False


@pytest.mark.asyncio
async def test_status_is_cached(fake_db):
    fake_db.seed("profiles", {"id": USER_ID, "onboarding_completed_at": "2026-01-02T00:00:00+00:00"})
    svc = OnboardingService(client=fake_db)

    assert await svc.is_onboarded(USER_ID) is True
    fake_db.rows("profiles")[0]["onboarding_completed_at"] = None
    assert await svc.is_onboarded(USER_ID) is True

    selects = [e for e in fake_db.executed if e[:2] == ("profiles", "select")]
    assert len(selects) == 1


@pytest.mark.asyncio
async def test_missing_profile_needs_onboarding(fake_db):
    svc = OnboardingService(client=fake_db)
    status = await svc.get_onboarding_status("nobody")
    assert status.state == "needs_onboarding"


@pytest.mark.asyncio
async def test_read_failure_fails_open_and_is_not_cached(fake_db):
    fake_db.fail("profiles", api_error("57014", "statement timeout"))
    svc = OnboardingService(client=fake_db)

    status = await svc.get_onboarding_status(USER_ID)

    assert status.state == "onboarded"
    assert is_onboarded_cached(USER_ID) is None


def test_cache_entries_expire():
    now = [100.0]
    cache = OnboardingStatusCache(ttl=30, clock=lambda: now[0])
    cache.set(USER_ID, OnboardingStatus(state="onboarded"))

    now[0] += 29
    assert cache.get(USER_ID) is not None
    now[0] += 1
    assert cache.get(USER_ID) is None


@pytest.mark.asyncio
async def test_mark_complete_writes_all_columns_and_awards_xp(fake_db):
    fake_db.seed("profiles", {"id": USER_ID, "onboarding_completed_at": None})
    gamification = AsyncMock()
    svc = OnboardingService(client=fake_db, gamification_service=gamification)
    await svc.get_onboarding_status(USER_ID)

    assert await svc.mark_onboarding_complete(USER_ID) is True

    profile = fake_db.rows("profiles")[0]
    assert profile["onboarding_completed_at"]
    assert profile["onboarding_completed"] is True
    assert profile["onboarding_status"] == "completed"
    assert profile["onboarding_step"] == 4
    assert is_onboarded_cached(USER_ID) is None
    assert (await svc.get_onboarding_status(USER_ID)).state == "onboarded"
    gamification.award_xp.assert_awaited_once_with(
        USER_ID, "onboarding_completed", idempotency_key=f"onboarding:{USER_ID}"
    )


@pytest.mark.asyncio
async def test_reset_clears_completion(fake_db):
    fake_db.seed("profiles", {"id": USER_ID, "onboarding_completed_at": "2026-01-02T00:00:00+00:00"})
    svc = OnboardingService(client=fake_db)
    assert await svc.is_onboarded(USER_ID) is True

    assert await svc.reset_onboarding(USER_ID) is True

    assert fake_db.rows("profiles")[0]["onboarding_completed_at"] is None
    assert await svc.is_onboarded(USER_ID) is False


def test_guard_redirects_once_then_leaves_navigation_alone():
    guard = OnboardingGuard()
    pending = OnboardingStatus(state="needs_onboarding")

    assert guard.decide(USER_ID, "/app/dashboard", pending) == ONBOARDING_PATH
    assert guard.has_redirected is True
    assert guard.decide(USER_ID, "/app/recipes", pending) is None


def test_guard_exempt_routes_and_loading():
    guard = OnboardingGuard()
    pending = OnboardingStatus(state="needs_onboarding")

    assert guard.decide(USER_ID, "/auth/callback", pending) is None
    assert guard.decide(USER_ID, ONBOARDING_PATH, pending) is None
    assert guard.decide(USER_ID, "/app/dashboard", OnboardingStatus(state="loading")) is None
    assert guard.decide(None, "/app/dashboard", pending) is None


def test_guard_sends_onboarded_users_away_from_onboarding():
    guard = OnboardingGuard()
    done = OnboardingStatus(state="onboarded")

    assert guard.decide(USER_ID, ONBOARDING_PATH, done) == DASHBOARD_PATH
    assert guard.decide(USER_ID, "/app/recipes", done) is None


def test_guard_resets_when_user_changes():
    guard = OnboardingGuard()
    pending = OnboardingStatus(state="needs_onboarding")

    guard.decide("user-a", "/app/dashboard", pending)
    assert guard.decide("user-b", "/app/dashboard", pending) == ONBOARDING_PATH


@pytest.mark.asyncio
async def test_check_route_keeps_guard_state_per_user(fake_db):
    fake_db.seed("profiles", {"id": USER_ID, "onboarding_completed_at": None})
    svc = OnboardingService(client=fake_db)

    first = await svc.check_route(USER_ID, "/app/dashboard")
    second = await svc.check_route(USER_ID, "/app/dashboard")

    assert first.redirect_to == ONBOARDING_PATH
    assert second.redirect_to is None
    assert second.state == "needs_onboarding"
