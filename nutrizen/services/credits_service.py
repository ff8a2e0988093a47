# nutrizen/services/credits_service.py
"""
Credits ("Crédits Zen") wallet operations.

Balances are split into subscription credits (refilled on a cadence) and
lifetime credits (purchased). Spending subscription credits first, checking
sufficiency and debiting all happen inside the `check_and_consume_credits`
procedure; this module only calls it and classifies the outcome. It never
computes a new balance itself.
"""
from __future__ import annotations

import collections
import logging
import uuid
from typing import Any, Dict, Optional

from nutrizen.config.logging_config import redact_id
from nutrizen.models.credits import CreditResetSummary, CreditsCheckResult, WalletBalance
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.base import SupabaseService, _now_iso, first_row
from nutrizen.services.errors import ErrorCode

logger = logging.getLogger(__name__)

FEATURE_COSTS: Dict[str, int] = {
    "swap": 1,
    "scan_repas": 2,
    "inspi_frigo": 2,
    "substitutions": 1,
    "generate_week": 7,
}

MAX_REPORTED_RESET_ERRORS = 10


def get_feature_cost(feature: str) -> int:
    return FEATURE_COSTS.get(feature, 1)


class CreditsService(SupabaseService):

    def __init__(self, client: Any = None, max_reset_checked: int = 4096) -> None:
        super().__init__(client)
        # users whose reset was already attempted by this process
        self._reset_checked: "collections.OrderedDict[str, None]" = collections.OrderedDict()
        self._max_reset_checked = max_reset_checked

    async def check_and_consume_credits(
        self,
        user: Optional[AuthenticatedUser],
        feature: str,
        cost: Optional[int] = None,
    ) -> CreditsCheckResult:
        """
        Check and debit `cost` credits for `feature` in one round trip.
        Without a user the procedure is not called at all.
        """
        if user is None:
            return CreditsCheckResult(
                success=False,
                error_code=ErrorCode.UNAUTHORIZED,
                message="Authentication required",
            )

        cost = cost if cost is not None else get_feature_cost(feature)
        try:
            res = await self._rpc(
                "check_and_consume_credits",
                {"p_user_id": user.id, "p_feature": feature, "p_cost": cost},
            )
            if not res["ok"]:
                logger.error(
                    "check_and_consume_credits failed for %s feature=%s: %s",
                    redact_id(user.id),
                    feature,
                    res.get("error"),
                )
                return CreditsCheckResult(
                    success=False,
                    error_code=ErrorCode.RPC_ERROR,
                    message="Could not verify credits",
                )
            data = first_row(res["data"]) or {}
            return CreditsCheckResult(**data)
        except Exception as exc:
            logger.exception("Unexpected error consuming credits: %s", exc)
            return CreditsCheckResult(
                success=False,
                error_code=ErrorCode.UNKNOWN_ERROR,
                message="Unexpected error",
            )

    async def get_credits_balance(self, user_id: str) -> Optional[WalletBalance]:
        def _fn():
            return (
                self.client.table("user_wallets")
                .select("subscription_credits, lifetime_credits")
                .eq("user_id", user_id)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        if not res["ok"]:
            if res["diagnostics"].get("code") == "PGRST116":
                return WalletBalance()
            logger.error("Could not read wallet for %s: %s", redact_id(user_id), res.get("error"))
            return None

        row = first_row(res["data"])
        if not row:
            return WalletBalance()
        subscription = row.get("subscription_credits") or 0
        lifetime = row.get("lifetime_credits") or 0
        return WalletBalance(subscription=subscription, lifetime=lifetime, total=subscription + lifetime)

    async def apply_credit_reset(self, user_id: str) -> Dict[str, Any]:
        res = await self._rpc("rpc_apply_credit_reset", {"p_user_id": user_id})
        if not res["ok"]:
            return {"action": "error", "error": res.get("error")}
        return first_row(res["data"]) or {"action": "unknown"}

    async def apply_credit_reset_once(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Fallback reset applied at most once per user for this process."""
        if user_id in self._reset_checked:
            return None
        self._reset_checked[user_id] = None
        if len(self._reset_checked) > self._max_reset_checked:
            self._reset_checked.popitem(last=False)
        result = await self.apply_credit_reset(user_id)
        if result.get("action") == "reset_applied":
            logger.info("Credit reset applied for %s", redact_id(user_id))
        return result

    async def run_credit_resets(
        self,
        batch_size: int = 200,
        dry_run: bool = False,
        trigger: str = "cron_hourly",
    ) -> CreditResetSummary:
        run_id = str(uuid.uuid4())

        def _log_run():
            return (
                self.client.table("credit_reset_runs")
                .insert(
                    {
                        "id": run_id,
                        "trigger": trigger,
                        "status": "running",
                        "summary": {"batch_size": batch_size, "dry_run": dry_run},
                    }
                )
                .execute()
            )

        log_res = await self._call_db(_log_run)
        if not log_res["ok"]:
            logger.warning("Could not create credit_reset_runs row: %s", log_res.get("error"))

        now = _now_iso()

        def _due_wallets():
            return (
                self.client.table("user_wallets")
                .select("user_id, reset_cadence, last_reset_at, next_reset_at, allowance_amount")
                .neq("reset_cadence", "none")
                .gt("allowance_amount", 0)
                .or_(f"next_reset_at.lte.{now},last_reset_at.is.null")
                .limit(batch_size)
                .execute()
            )

        wallets_res = await self._call_db(_due_wallets)
        if not wallets_res["ok"]:
            await self._finish_run(run_id, "error", None, error=wallets_res.get("error"))
            return CreditResetSummary(
                success=False, run_id=run_id, dry_run=dry_run, message="Failed to fetch users"
            )

        wallets = wallets_res["data"] or []
        summary = CreditResetSummary(run_id=run_id, dry_run=dry_run, users_scanned=len(wallets))
        if not wallets:
            summary.message = "No users due for reset"
            await self._finish_run(run_id, "success", summary)
            return summary

        for wallet in wallets:
            user_id = str(wallet.get("user_id"))
            if dry_run:
                summary.users_reset += 1
                summary.credits_added += wallet.get("allowance_amount") or 0
                continue

            result = await self.apply_credit_reset(user_id)
            action = result.get("action", "unknown")
            if action == "reset_applied":
                summary.users_reset += 1
                summary.credits_added += result.get("granted_amount") or wallet.get("allowance_amount") or 0
            elif action == "error":
                summary.errors += 1
                if len(summary.error_details) < MAX_REPORTED_RESET_ERRORS:
                    summary.error_details.append(
                        {"user_id": user_id[:8], "error": str(result.get("error"))}
                    )

        status = "error" if summary.errors and not summary.users_reset else "success"
        error = f"{summary.errors} user(s) failed" if summary.errors else None
        await self._finish_run(run_id, status, summary, error=error)
        logger.info(
            "Credit reset run %s: scanned=%s reset=%s added=%s errors=%s",
            run_id,
            summary.users_scanned,
            summary.users_reset,
            summary.credits_added,
            summary.errors,
        )
        return summary

    async def _finish_run(
        self,
        run_id: str,
        status: str,
        summary: Optional[CreditResetSummary],
        error: Optional[str] = None,
    ) -> None:
        fields: Dict[str, Any] = {"finished_at": _now_iso(), "status": status, "error": error}
        if summary is not None:
            fields["summary"] = summary.model_dump(exclude={"success", "run_id"})

        def _fn():
            return self.client.table("credit_reset_runs").update(fields).eq("id", run_id).execute()

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.warning("Could not finalize credit reset run %s: %s", run_id, res.get("error"))

    async def admin_manage_credits(self, user_id: str, credits: int, operation: str) -> Dict[str, Any]:
        """Back-office adjustment of the dashboard counter; never below zero."""

        def _read():
            return (
                self.client.table("user_dashboard_stats")
                .select("credits_zen")
                .eq("user_id", user_id)
                .maybe_single()
                .execute()
            )

        current_res = await self._call_db(_read)
        if not current_res["ok"]:
            return current_res
        previous = (first_row(current_res["data"]) or {}).get("credits_zen") or 0

        if operation == "set":
            new_credits = credits
        elif operation == "add":
            new_credits = previous + credits
        elif operation == "subtract":
            new_credits = max(0, previous - credits)
        else:
            raise ValueError(f"unknown operation: {operation}")

        def _write():
            return (
                self.client.table("user_dashboard_stats")
                .update({"credits_zen": new_credits})
                .eq("user_id", user_id)
                .execute()
            )

        write_res = await self._call_db(_write)
        if not write_res["ok"]:
            return write_res
        logger.info(
            "Admin credit %s for %s: %s -> %s", operation, redact_id(user_id), previous, new_credits
        )
        return {
            "ok": True,
            "data": {"previous_credits": previous, "new_credits": new_credits, "operation": operation},
            "diagnostics": {},
        }
