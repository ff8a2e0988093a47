# nutrizen/api/intake.py
"""
Public lead and contact forms; no authentication, rate limited per IP.
"""
from fastapi import APIRouter, Depends, Request

from nutrizen.api.deps import get_intake_service
from nutrizen.models.intake import ContactRequest, LeadRequest
from nutrizen.services.intake_service import IntakeService, client_identifier

router = APIRouter()


@router.post("/leads")
async def submit_lead(
    body: LeadRequest,
    request: Request,
    intake_service: IntakeService = Depends(get_intake_service),
):
    return await intake_service.submit_lead(body, client_identifier(request.headers))


@router.post("/contact")
async def submit_contact(
    body: ContactRequest,
    request: Request,
    intake_service: IntakeService = Depends(get_intake_service),
):
    return await intake_service.submit_contact(body, client_identifier(request.headers))
