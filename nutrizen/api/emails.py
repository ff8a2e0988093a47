# nutrizen/api/emails.py
from fastapi import APIRouter, Depends

from nutrizen.api.deps import get_email_service, require_service_token
from nutrizen.models.email import TransactionalEmailRequest
from nutrizen.services.email_service import EmailService

router = APIRouter()


@router.post("/transactional")
async def send_transactional_email(
    body: TransactionalEmailRequest,
    _token: str = Depends(require_service_token),
    email_service: EmailService = Depends(get_email_service),
):
    """Server-side only: the caller must present the service role key."""
    result = await email_service.send_transactional_email(body)
    return result.model_dump(exclude_none=True)
