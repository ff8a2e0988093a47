# nutrizen/tests/test_intake_service.py
import json

import httpx
import pytest
from pydantic import ValidationError

from nutrizen.config.settings import settings
from nutrizen.models.intake import ContactRequest, LeadRequest
from nutrizen.services.errors import PublicError
from nutrizen.services.intake_service import IntakeService, client_identifier
from nutrizen.tests.conftest import api_error

CONTACT = {
    "name": "Léa",
    "email": "lea@example.com",
    "subject": "Question abonnement",
    "message": "Bonjour, je voudrais changer de formule.",
}


@pytest.fixture
def n8n(monkeypatch):
    monkeypatch.setattr(settings, "n8n_webhook_base", "https://n8n.example.com")
    sent = []

    def handler(request):
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={})

    return sent, httpx.MockTransport(handler)


def test_client_identifier():
    assert client_identifier({"x-forwarded-for": "1.2.3.4, 10.0.0.1"}) == "ip:1.2.3.4"
    assert client_identifier({"x-real-ip": "5.6.7.8"}) == "ip:5.6.7.8"
    assert client_identifier({}) == "ip:unknown"


def test_request_validation():
    with pytest.raises(ValidationError):
        LeadRequest(email="not-an-email", source="landing")
    with pytest.raises(ValidationError):
        LeadRequest(email="a@b.fr", source="   ")
    with pytest.raises(ValidationError):
        ContactRequest(**{**CONTACT, "message": "trop court"})
    assert LeadRequest(email=" a@b.fr ", source=" landing ").source == "landing"


@pytest.mark.asyncio
async def test_lead_is_rate_limited_then_forwarded(fake_db, n8n):
    sent, transport = n8n
    fake_db.rpc_handlers["check_rate_limit"] = {"allowed": True, "remaining": 4}
    async with httpx.AsyncClient(transport=transport) as http:
        svc = IntakeService(client=fake_db, http_client=http)
        result = await svc.submit_lead(LeadRequest(email="a@b.fr", source="landing"), "ip:1.2.3.4")

    assert result == {"success": True}
    assert sent[0][0] == "/webhook/submit-lead"
    assert sent[0][1]["email"] == "a@b.fr"
    params = fake_db.calls_to("check_rate_limit")[0]
    assert params["p_endpoint"] == "submit-lead"
    assert params["p_cost"] == 60


@pytest.mark.asyncio
async def test_refused_request_gets_429_with_retry_after(fake_db, n8n):
    sent, transport = n8n
    fake_db.rpc_handlers["check_rate_limit"] = {"allowed": False, "remaining": 0}
    async with httpx.AsyncClient(transport=transport) as http:
        svc = IntakeService(client=fake_db, http_client=http)
        with pytest.raises(PublicError) as exc:
            await svc.submit_lead(LeadRequest(email="a@b.fr", source="landing"), "ip:1.2.3.4")

    assert exc.value.status_code == 429
    assert exc.value.details == {"retry_after": 12}
    assert sent == []


@pytest.mark.asyncio
async def test_limiter_failure_lets_request_through(fake_db, n8n):
    sent, transport = n8n
    fake_db.rpc_handlers["check_rate_limit"] = api_error("XX000")
    async with httpx.AsyncClient(transport=transport) as http:
        svc = IntakeService(client=fake_db, http_client=http)
        result = await svc.submit_contact(ContactRequest(**CONTACT), "ip:1.2.3.4")

    assert result == {"ok": True}
    assert sent[0][0] == "/webhook/contact"


@pytest.mark.asyncio
async def test_honeypot_is_silently_accepted(fake_db, n8n):
    sent, transport = n8n
    async with httpx.AsyncClient(transport=transport) as http:
        svc = IntakeService(client=fake_db, http_client=http)
        result = await svc.submit_contact(ContactRequest(**CONTACT, website="spam.biz"), "ip:1.2.3.4")

    assert result == {"ok": True}
    assert sent == []
    assert fake_db.rpc_calls == []


@pytest.mark.asyncio
async def test_forwarding_errors(fake_db, monkeypatch):
    fake_db.rpc_handlers["check_rate_limit"] = {"allowed": True}
    monkeypatch.setattr(settings, "n8n_webhook_base", None)
    svc = IntakeService(client=fake_db)
    with pytest.raises(PublicError) as missing:
        await svc.submit_contact(ContactRequest(**CONTACT), "ip:x")
    assert missing.value.status_code == 503

    monkeypatch.setattr(settings, "n8n_webhook_base", "https://n8n.example.com")
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    async with httpx.AsyncClient(transport=transport) as http:
        svc = IntakeService(client=fake_db, http_client=http)
        with pytest.raises(PublicError) as failed:
            await svc.submit_contact(ContactRequest(**CONTACT), "ip:x")
    assert failed.value.status_code == 502


@pytest.mark.asyncio
async def test_contact_and_lead_use_separate_buckets(fake_db, n8n):
    sent, transport = n8n
    fake_db.rpc_handlers["check_rate_limit"] = {"allowed": True, "remaining": 4}
    async with httpx.AsyncClient(transport=transport) as http:
        svc = IntakeService(client=fake_db, http_client=http)
        await svc.submit_contact(ContactRequest(**CONTACT), "ip:1.2.3.4")
        await svc.submit_lead(LeadRequest(email="a@b.fr", source="landing"), "ip:1.2.3.4")

    contact, lead = fake_db.calls_to("check_rate_limit")
    assert (contact["p_endpoint"], contact["p_cost"]) == ("submit-contact", 1)
    assert (lead["p_endpoint"], lead["p_cost"]) == ("submit-lead", 60)
