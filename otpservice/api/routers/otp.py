from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from ...observability.logging import client_ip
from ...services.otp_lifecycle import (
    InvalidOTP,
    IssuanceFailed,
    OtpLifecycleManager,
    TooManyOutstanding,
    VerificationFailed,
)
from ...services.rate_limit import limit_otp_request, limit_otp_verify

router = APIRouter(prefix="/api", tags=["otp"])


class SendOtpIn(BaseModel):
    email: EmailStr


class VerifyOtpIn(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=32)


def get_otp_manager(request: Request) -> OtpLifecycleManager:
    return request.app.state.otp_manager


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/send-otp")
async def send_otp(payload: SendOtpIn, request: Request, manager: OtpLifecycleManager = Depends(get_otp_manager)):
    await limit_otp_request(request)
    try:
        await manager.issue(str(payload.email), client_ip(request))
    except TooManyOutstanding:
        return _error(status.HTTP_429_TOO_MANY_REQUESTS, "Too many outstanding OTPs")
    except IssuanceFailed:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "OTP send failed")
    return {"success": True}


@router.post("/verify-otp")
async def verify_otp(payload: VerifyOtpIn, request: Request, manager: OtpLifecycleManager = Depends(get_otp_manager)):
    await limit_otp_verify(request)
    try:
        await manager.verify(str(payload.email), payload.otp.strip())
    except InvalidOTP:
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid OTP")
    except VerificationFailed:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "OTP verification failed")
    return {"success": True}
