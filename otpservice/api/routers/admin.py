from __future__ import annotations
import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import PlainTextResponse

from ...services.mailer import MailDeliveryError

router = APIRouter(tags=["admin"])
log = logging.getLogger("otpservice.admin")


@router.get("/test-email", response_class=PlainTextResponse)
async def test_email(request: Request):
    """Send a test message to the admin mailbox to confirm the mail transport works."""
    try:
        await request.app.state.mailer.send_test()
    except MailDeliveryError:
        log.exception("test email failed")
        return PlainTextResponse("Email failed", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return "Email sent successfully"
