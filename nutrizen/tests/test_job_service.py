# nutrizen/tests/test_job_service.py
import json
import uuid

import httpx
import pytest

from nutrizen.config.settings import settings
from nutrizen.models.jobs import StartJobRequest
from nutrizen.services.errors import PublicError
from nutrizen.services.job_service import (
    JobPoller,
    JobPollTimeout,
    JobService,
    compute_signature,
    verify_signature,
)
from nutrizen.tests.conftest import api_error

WEBHOOK = "https://n8n.example.com/webhook/scan"


@pytest.fixture
def job_settings(monkeypatch):
    monkeypatch.setattr(settings, "n8n_analyze_meal_webhook", WEBHOOK)
    monkeypatch.setattr(settings, "public_api_url", "https://api.example.com")
    monkeypatch.setattr(settings, "n8n_hmac_secret", "shh")


@pytest.fixture
def debit_ok(fake_db):
    fake_db.rpc_handlers["rpc_debit_credits_for_job"] = {"success": True, "consumed": 2}
    fake_db.rpc_handlers["rpc_refund_credits_for_job"] = {"success": True}
    return fake_db


def _recording_transport(sent, status=200):
    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(status, json={"accepted": True})

    return httpx.MockTransport(handler)


def _request(key="key-1"):
    return StartJobRequest(type="scan_repas", payload={"image": "data:..."}, idempotency_key=key)


@pytest.mark.asyncio
async def test_start_job_debits_creates_and_dispatches(debit_ok, user, job_settings):
    sent = []
    async with httpx.AsyncClient(transport=_recording_transport(sent)) as http:
        svc = JobService(client=debit_ok, http_client=http)
        result = await svc.start_job(user, _request())

    assert result.success is True
    assert result.status == "running"
    job = debit_ok.rows("automation_jobs")[0]
    assert job["status"] == "running"
    assert sent[0]["job_id"] == result.job_id
    assert sent[0]["callback_url"].endswith("/api/jobs/callback")
    assert debit_ok.calls_to("rpc_debit_credits_for_job")[0]["p_idempotency_key"] == "key-1"
    assert debit_ok.calls_to("rpc_refund_credits_for_job") == []


@pytest.mark.asyncio
async def test_start_job_insufficient_credits(fake_db, user, job_settings):
    fake_db.rpc_handlers["rpc_debit_credits_for_job"] = {
        "success": False,
        "error_code": "INSUFFICIENT_CREDITS",
        "current_balance": 1,
        "required": 2,
    }
    svc = JobService(client=fake_db)

    result = await svc.start_job(user, _request())

    assert result.status_code == 402
    assert result.required == 2
    assert fake_db.rows("automation_jobs") == []


@pytest.mark.asyncio
async def test_start_job_requires_user(fake_db):
    result = await JobService(client=fake_db).start_job(None, _request())
    assert result.status_code == 401


@pytest.mark.asyncio
async def test_missing_webhook_marks_error_and_refunds(debit_ok, user, job_settings, monkeypatch):
    monkeypatch.setattr(settings, "n8n_analyze_meal_webhook", None)
    svc = JobService(client=debit_ok)

    result = await svc.start_job(user, _request())

    assert result.status_code == 503
    assert result.error_code == "WEBHOOK_NOT_CONFIGURED"
    assert debit_ok.rows("automation_jobs")[0]["status"] == "error"
    assert len(debit_ok.calls_to("rpc_refund_credits_for_job")) == 1


@pytest.mark.asyncio
async def test_webhook_failure_refunds(debit_ok, user, job_settings):
    sent = []
    async with httpx.AsyncClient(transport=_recording_transport(sent, status=500)) as http:
        svc = JobService(client=debit_ok, http_client=http)
        result = await svc.start_job(user, _request())

    assert result.error_code == "WEBHOOK_FAILED"
    assert result.status_code == 503
    refund = debit_ok.calls_to("rpc_refund_credits_for_job")[0]
    assert refund["p_original_idempotency_key"] == "key-1"


@pytest.mark.asyncio
async def test_replayed_key_returns_finished_job_without_dispatch(debit_ok, user, job_settings):
    debit_ok.seed(
        "automation_jobs",
        {
            "id": "job-1",
            "user_id": user.id,
            "idempotency_key": "key-1",
            "status": "success",
            "result": {"calories": 420},
        },
    )
    sent = []
    async with httpx.AsyncClient(transport=_recording_transport(sent)) as http:
        svc = JobService(client=debit_ok, http_client=http)
        result = await svc.start_job(user, _request())

    assert result.success is True
    assert result.status == "success"
    assert result.result == {"calories": 420}
    assert sent == []
    assert debit_ok.rows("automation_jobs")[0]["status"] == "success"


@pytest.mark.asyncio
async def test_job_creation_failure_refunds(debit_ok, user, job_settings):
    debit_ok.fail("automation_jobs", api_error("23503"), action="upsert")
    result = await JobService(client=debit_ok).start_job(user, _request())
    assert result.error_code == "JOB_CREATE_ERROR"
    assert len(debit_ok.calls_to("rpc_refund_credits_for_job")) == 1


def test_signature_verification():
    body = b'{"a":1}'
    digest = compute_signature(body, "shh")
    assert verify_signature(body, digest, "shh")
    assert verify_signature(body, f"sha256={digest}", "shh")
    assert not verify_signature(body, "deadbeef", "shh")
    assert not verify_signature(body, None, "shh")
    assert verify_signature(body, None, None)


def test_non_ascii_signature_is_rejected_not_raised():
    assert not verify_signature(b"{}", "sha256=café", "shh")
    assert not verify_signature(b"{}", "café", "shh")


def _seed_running_job(fake_db, key="key-1"):
    job_id = str(uuid.uuid4())
    fake_db.seed("automation_jobs", {"id": job_id, "user_id": "u", "idempotency_key": key, "status": "running"})
    return job_id


def _signed(payload):
    body = json.dumps(payload).encode()
    return body, compute_signature(body, "shh")


@pytest.mark.asyncio
async def test_callback_stores_result_once(fake_db, job_settings):
    job_id = _seed_running_job(fake_db)
    body, sig = _signed({"job_id": job_id, "status": "success", "result": {"ok": 1}, "idempotency_key": "key-1"})
    svc = JobService(client=fake_db)

    first = await svc.handle_job_callback(body, sig)
    assert first["status"] == "success"
    assert fake_db.rows("automation_jobs")[0]["result"] == {"ok": 1}

    late, late_sig = _signed({"job_id": job_id, "status": "error", "error": "late", "idempotency_key": "key-1"})
    second = await svc.handle_job_callback(late, late_sig)
    assert second["message"] == "Job already finalized"
    assert fake_db.rows("automation_jobs")[0]["status"] == "success"


@pytest.mark.asyncio
async def test_callback_rejections(fake_db, job_settings):
    job_id = _seed_running_job(fake_db)
    svc = JobService(client=fake_db)

    body, _ = _signed({"job_id": job_id, "status": "success", "idempotency_key": "key-1"})
    with pytest.raises(PublicError) as bad_sig:
        await svc.handle_job_callback(body, "nope")
    assert bad_sig.value.status_code == 401

    body, sig = _signed({"job_id": job_id, "status": "success", "idempotency_key": "other"})
    with pytest.raises(PublicError) as mismatch:
        await svc.handle_job_callback(body, sig)
    assert mismatch.value.status_code == 400

    body, sig = _signed({"job_id": str(uuid.uuid4()), "status": "success", "idempotency_key": "key-1"})
    with pytest.raises(PublicError) as missing:
        await svc.handle_job_callback(body, sig)
    assert missing.value.status_code == 404

    body, sig = _signed({"job_id": "not-a-uuid", "status": "success", "idempotency_key": "key-1"})
    with pytest.raises(PublicError) as invalid:
        await svc.handle_job_callback(body, sig)
    assert invalid.value.status_code == 400


@pytest.mark.asyncio
async def test_error_callback_keeps_the_charge(fake_db, job_settings):
    job_id = _seed_running_job(fake_db)
    body, sig = _signed({"job_id": job_id, "status": "error", "error": "vision failed", "idempotency_key": "key-1"})

    await JobService(client=fake_db).handle_job_callback(body, sig)

    assert fake_db.rows("automation_jobs")[0]["error"] == "vision failed"
    assert fake_db.calls_to("rpc_refund_credits_for_job") == []


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.ticks = 0
        self.on_tick = None

    async def sleep(self, seconds):
        self.now += seconds
        self.ticks += 1
        if self.on_tick:
            self.on_tick(self.ticks)

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_poller_survives_read_errors_until_terminal(fake_db):
    job_id = _seed_running_job(fake_db)
    fake_db.fail("automation_jobs", api_error("57014"))
    clock = FakeClock()

    def on_tick(tick):
        if tick == 2:
            fake_db.table_errors.clear()
        if tick == 3:
            fake_db.rows("automation_jobs")[0].update({"status": "success", "result": {"dish": "curry"}})

    clock.on_tick = on_tick
    poller = JobPoller(JobService(client=fake_db), interval=2, max_poll_time=60, sleep=clock.sleep, clock=clock)

    outcome = await poller.wait(job_id)

    assert outcome.status == "success"
    assert outcome.result == {"dish": "curry"}
    assert clock.ticks == 3


@pytest.mark.asyncio
async def test_poller_gives_up_after_max_poll_time(fake_db):
    job_id = _seed_running_job(fake_db)
    clock = FakeClock()
    poller = JobPoller(JobService(client=fake_db), interval=2, max_poll_time=5, sleep=clock.sleep, clock=clock)

    with pytest.raises(JobPollTimeout) as exc:
        await poller.wait(job_id)
    assert exc.value.job_id == job_id
    assert clock.ticks == 3


@pytest.mark.asyncio
async def test_run_job_returns_error_outcome_on_start_failure(fake_db, user, job_settings):
    fake_db.rpc_handlers["rpc_debit_credits_for_job"] = {"success": False, "message": "Insufficient credits"}
    poller = JobPoller(JobService(client=fake_db), interval=0)

    outcome = await poller.run_job(user, _request())

    assert outcome.status == "error"
    assert outcome.error == "Insufficient credits"
