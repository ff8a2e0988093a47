# nutrizen/api/deps.py
"""
Shared FastAPI dependencies: bearer-token identity, role checks and service
singletons. Routers depend on the getters so tests can swap any service with
`app.dependency_overrides`.
"""
from __future__ import annotations

import hmac
import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request

from nutrizen.config.settings import settings
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.admin_service import AdminService
from nutrizen.services.ai_service import AIService
from nutrizen.services.auth_service import AuthService
from nutrizen.services.billing_service import BillingService
from nutrizen.services.credits_service import CreditsService
from nutrizen.services.email_service import EmailService
from nutrizen.services.errors import ErrorCode, PublicError
from nutrizen.services.gamification_service import GamificationService
from nutrizen.services.intake_service import IntakeService
from nutrizen.services.job_service import JobPoller, JobService
from nutrizen.services.menu_service import MenuService
from nutrizen.services.onboarding_service import OnboardingService
from nutrizen.services.pinterest_service import PinterestService
from nutrizen.services.referral_service import ReferralService

logger = logging.getLogger(__name__)


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# --- service singletons ---


@lru_cache(maxsize=None)
def get_auth_service() -> AuthService:
    return AuthService()


@lru_cache(maxsize=None)
def get_credits_service() -> CreditsService:
    return CreditsService()


@lru_cache(maxsize=None)
def get_gamification_service() -> GamificationService:
    return GamificationService()


@lru_cache(maxsize=None)
def get_onboarding_service() -> OnboardingService:
    return OnboardingService(gamification_service=get_gamification_service())


@lru_cache(maxsize=None)
def get_job_service() -> JobService:
    return JobService()


@lru_cache(maxsize=None)
def get_job_poller() -> JobPoller:
    return JobPoller(get_job_service())


@lru_cache(maxsize=None)
def get_menu_service() -> MenuService:
    return MenuService(
        credits_service=get_credits_service(),
        gamification_service=get_gamification_service(),
    )


@lru_cache(maxsize=None)
def get_ai_service() -> AIService:
    return AIService(credits_service=get_credits_service())


@lru_cache(maxsize=None)
def get_intake_service() -> IntakeService:
    return IntakeService()


@lru_cache(maxsize=None)
def get_email_service() -> EmailService:
    return EmailService()


@lru_cache(maxsize=None)
def get_pinterest_service() -> PinterestService:
    return PinterestService()


@lru_cache(maxsize=None)
def get_billing_service() -> BillingService:
    return BillingService()


@lru_cache(maxsize=None)
def get_referral_service() -> ReferralService:
    return ReferralService()


@lru_cache(maxsize=None)
def get_admin_service() -> AdminService:
    return AdminService(
        credits_service=get_credits_service(),
        onboarding_service=get_onboarding_service(),
    )


# --- identity ---


async def get_optional_user(
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> Optional[AuthenticatedUser]:
    return await auth_service.get_user_from_token(bearer_token(request))


async def get_current_user(
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> AuthenticatedUser:
    if user is None:
        raise PublicError("Authentication required", ErrorCode.UNAUTHORIZED, 401)
    return user


async def require_admin(
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthenticatedUser:
    if not await auth_service.is_admin(user.id):
        logger.warning("Admin access denied")
        raise PublicError("Insufficient permissions", ErrorCode.PERMISSION_DENIED, 403)
    return user


def require_service_token(request: Request) -> str:
    """Server-to-server calls: bearer must be the service role key or CRON_SECRET."""
    token = bearer_token(request)
    accepted = [s for s in (settings.supabase_service_role_key, settings.cron_secret) if s]
    if not token or not any(
        hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")) for secret in accepted
    ):
        logger.warning("Rejected service call to %s", request.url.path)
        raise PublicError("Unauthorized", ErrorCode.UNAUTHORIZED, 401)
    return token
