# nutrizen/services/job_service.py
"""
Automation jobs (meal-photo scan, fridge inspiration, substitutions).

Lifecycle:
  1. start_job debits credits (idempotent on the caller's key), upserts an
     `automation_jobs` row and hands the job to an n8n webhook.
  2. n8n calls back with a signed payload; handle_job_callback stores the
     terminal state exactly once.
  3. JobPoller reads the row every few seconds until it is terminal or the
     polling time limit is spent.

Every failure after the debit refunds it, except a failure reported by the
worker itself: those keep the charge.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from nutrizen.config.logging_config import redact_id
from nutrizen.config.settings import settings
from nutrizen.models.jobs import (
    TERMINAL_STATUSES,
    JobCallbackPayload,
    JobOutcome,
    StartJobRequest,
    StartJobResult,
)
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.base import SupabaseService, first_row
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 30.0
SIGNATURE_HEADER = "x-n8n-signature"

WEBHOOK_MISSING_MESSAGES = {
    "scan_repas": "Missing configuration: ScanRepas webhook.",
    "inspi_frigo": "Missing configuration: InspiFrigo webhook.",
    "substitutions": "Missing configuration: substitutions webhook.",
}


def get_webhook_url(job_type: str) -> Optional[str]:
    return {
        "scan_repas": settings.n8n_analyze_meal_webhook,
        "inspi_frigo": settings.n8n_analyze_fridge_webhook,
        "substitutions": settings.n8n_substitutions_webhook,
    }.get(job_type)


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 hex digest, optionally prefixed "sha256=". No secret, no check."""
    if not secret:
        return True
    if not signature:
        return False
    provided = signature[len("sha256="):] if signature.startswith("sha256=") else signature
    expected = compute_signature(body, secret)
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


class JobService(SupabaseService):

    def __init__(self, client: Any = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(client)
        self.http_client = http_client

    async def start_job(self, user: Optional[AuthenticatedUser], request: StartJobRequest) -> StartJobResult:
        if user is None:
            return StartJobResult(
                success=False, error="Authentication required", error_code=ErrorCode.UNAUTHORIZED, status_code=401
            )

        debit = await self._rpc(
            "rpc_debit_credits_for_job",
            {"p_user_id": user.id, "p_feature": request.type, "p_idempotency_key": request.idempotency_key},
        )
        if not debit["ok"]:
            logger.error("Job debit failed for %s: %s", redact_id(user.id), debit.get("error"))
            return StartJobResult(success=False, error="System error", error_code="SYSTEM_ERROR", status_code=500)

        outcome = first_row(debit["data"]) or {}
        if not outcome.get("success"):
            return StartJobResult(
                success=False,
                error=outcome.get("message") or "Insufficient credits",
                error_code=outcome.get("error_code") or ErrorCode.INSUFFICIENT_CREDITS,
                current_balance=outcome.get("current_balance"),
                required=outcome.get("required"),
                status_code=402,
            )

        def _upsert():
            return (
                self.client.table("automation_jobs")
                .upsert(
                    {
                        "user_id": user.id,
                        "type": request.type,
                        "payload": request.payload,
                        "idempotency_key": request.idempotency_key,
                        "status": "queued",
                    },
                    on_conflict="user_id,idempotency_key",
                )
                .execute()
            )

        # a replayed key must not reset a finished job back to queued
        job = await self._find_job_by_key(user.id, request.idempotency_key)
        replayed = job is not None
        if job is None:
            job_res = await self._call_db(_upsert)
            job = first_row(job_res.get("data")) if job_res["ok"] else None
        if not job:
            logger.error("Job creation failed for %s", redact_id(user.id))
            await self._refund(user.id, request)
            return StartJobResult(
                success=False, error="Could not create job", error_code="JOB_CREATE_ERROR", status_code=500
            )

        job_id = str(job["id"])
        if job.get("status") in TERMINAL_STATUSES:
            existing = await self._fetch_job(job_id)
            row = first_row(existing.get("data")) or job
            return StartJobResult(
                success=True,
                job_id=job_id,
                status=row.get("status"),
                result=row.get("result"),
                error=row.get("error"),
            )
        if replayed:
            return StartJobResult(success=True, job_id=job_id, status=job.get("status"))

        webhook_url = get_webhook_url(request.type)
        if not webhook_url:
            message = WEBHOOK_MISSING_MESSAGES.get(request.type, "Missing webhook configuration.")
            await self._mark_error(job_id, message)
            await self._refund(user.id, request)
            return StartJobResult(
                success=False,
                job_id=job_id,
                error=message,
                error_code="WEBHOOK_NOT_CONFIGURED",
                status_code=503,
            )

        body = {
            "job_id": job_id,
            "user_id": user.id,
            "type": request.type,
            "payload": request.payload,
            "callback_url": settings.job_callback_url,
            "idempotency_key": request.idempotency_key,
        }
        try:
            await self._post_webhook(webhook_url, body)
        except httpx.HTTPError as exc:
            logger.error("Webhook dispatch failed for job %s: %s", job_id, exc)
            await self._mark_error(job_id, "Could not reach the processing service")
            await self._refund(user.id, request)
            return StartJobResult(
                success=False,
                job_id=job_id,
                error="Service temporarily unavailable. Please retry later.",
                error_code="WEBHOOK_FAILED",
                status_code=503,
            )

        await self._update_job(job_id, {"status": "running"})
        return StartJobResult(success=True, job_id=job_id, status="running")

    async def _post_webhook(self, url: str, body: Dict[str, Any]) -> None:
        if self.http_client is not None:
            resp = await self.http_client.post(url, json=body, timeout=WEBHOOK_TIMEOUT)
            resp.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
            resp = await client.post(url, json=body)
            resp.raise_for_status()

    async def _refund(self, user_id: str, request: StartJobRequest) -> None:
        res = await self._rpc(
            "rpc_refund_credits_for_job",
            {
                "p_user_id": user_id,
                "p_feature": request.type,
                "p_original_idempotency_key": request.idempotency_key,
            },
        )
        if not res["ok"]:
            logger.error("Refund failed for %s key=%s: %s", redact_id(user_id), request.idempotency_key, res.get("error"))

    async def _mark_error(self, job_id: str, message: str) -> None:
        await self._update_job(job_id, {"status": "error", "error": message})

    async def _update_job(self, job_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        def _fn():
            return self.client.table("automation_jobs").update(fields).eq("id", job_id).execute()

        return await self._call_db(_fn)

    async def _find_job_by_key(self, user_id: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
        def _fn():
            return (
                self.client.table("automation_jobs")
                .select("id, status")
                .eq("user_id", user_id)
                .eq("idempotency_key", idempotency_key)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        return first_row(res["data"]) if res["ok"] else None

    async def _fetch_job(self, job_id: str, columns: str = "*") -> Dict[str, Any]:
        def _fn():
            return self.client.table("automation_jobs").select(columns).eq("id", job_id).maybe_single().execute()

        return await self._call_db(_fn)

    async def get_job(self, job_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Current row for `job_id`; raises PublicError when the read itself fails."""

        def _fn():
            query = self.client.table("automation_jobs").select("id, status, result, error").eq("id", job_id)
            if user_id:
                query = query.eq("user_id", user_id)
            return query.maybe_single().execute()

        res = await self._call_db(_fn)
        if not res["ok"]:
            raise PublicError("Could not read job status", ErrorCode.DB_ERROR, 500)
        return first_row(res["data"])

    async def handle_job_callback(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not verify_signature(raw_body, signature, settings.n8n_hmac_secret):
            logger.warning("Job callback rejected: invalid signature")
            raise PublicError("Invalid signature", ErrorCode.AUTH_ERROR, 401)

        try:
            payload = JobCallbackPayload.model_validate(json.loads(raw_body or b"{}"))
        except (ValueError, ValidationError) as exc:
            raise PublicError("Invalid payload", ErrorCode.VALIDATION_ERROR, 400) from exc

        job_id = str(payload.job_id)
        job_res = await self._fetch_job(job_id, "id, user_id, type, idempotency_key, status")
        job = first_row(job_res.get("data")) if job_res["ok"] else None
        if not job:
            raise PublicError("Job not found", ErrorCode.RESOURCE_NOT_FOUND, 404)

        if job.get("idempotency_key") != payload.idempotency_key:
            raise PublicError("Idempotency key mismatch", ErrorCode.VALIDATION_ERROR, 400)

        if job.get("status") in TERMINAL_STATUSES + ("canceled",):
            return {"success": True, "message": "Job already finalized"}

        fields: Dict[str, Any] = {"status": payload.status}
        if payload.status == "success" and payload.result is not None:
            fields["result"] = payload.result
        if payload.status == "error" and payload.error:
            fields["error"] = payload.error

        update = await self._update_job(job_id, fields)
        if not update["ok"]:
            raise PublicError("Update failed", ErrorCode.DB_ERROR, 500)

        if payload.status == "error":
            # the worker consumed resources; the charge stands
            logger.info("Job %s finished with error, no refund", job_id)
        return {"success": True, "job_id": job_id, "status": payload.status}


class JobPollTimeout(Exception):
    """The job did not reach a terminal state within the polling time limit."""

    def __init__(self, job_id: str, waited: float) -> None:
        super().__init__(f"Job {job_id} still pending after {waited:.0f}s")
        self.job_id = job_id
        self.waited = waited


class JobPoller:
    """
    Fixed-interval status polling. No backoff. A read error is logged and the
    next tick tries again; only the wall-clock limit ends the loop early.
    Cancel the awaiting task to stop polling.
    """

    def __init__(
        self,
        job_service: JobService,
        interval: Optional[float] = None,
        max_poll_time: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_service = job_service
        self.interval = interval if interval is not None else settings.job_poll_interval
        self.max_poll_time = max_poll_time if max_poll_time is not None else settings.job_max_poll_time
        self._sleep = sleep
        self._clock = clock

    async def wait(self, job_id: str, user_id: Optional[str] = None) -> JobOutcome:
        started = self._clock()
        while True:
            await self._sleep(self.interval)
            try:
                job = await self.job_service.get_job(job_id, user_id)
            except PublicError as exc:
                logger.warning("Poll error for job %s: %s", job_id, exc.message)
                job = None

            if job and job.get("status") in TERMINAL_STATUSES:
                return JobOutcome(
                    job_id=job_id,
                    status=job["status"],
                    result=job.get("result"),
                    error=job.get("error"),
                )

            waited = self._clock() - started
            if waited > self.max_poll_time:
                raise JobPollTimeout(job_id, waited)

    async def run_job(self, user: AuthenticatedUser, request: StartJobRequest) -> JobOutcome:
        """Start a job and wait for it. Start failures come back as an error outcome."""
        started = await self.job_service.start_job(user, request)
        if not started.success or not started.job_id:
            return JobOutcome(
                job_id=started.job_id or "",
                status="error",
                error=started.error or started.error_code,
            )
        if started.status in TERMINAL_STATUSES:
            return JobOutcome(job_id=started.job_id, status=started.status, result=started.result, error=started.error)
        return await self.wait(started.job_id, user.id)
