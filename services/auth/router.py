"""
services/auth/router.py
Phone OTP authentication endpoints.
Implements: Request OTP → Verify OTP → profile find-or-create → JWT issue
"""

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.auth.otp import (
    dispatch_code,
    needs_profile_completion,
    request_challenge,
    verify_challenge,
)
from services.notification.dispatcher import NotificationDispatcher, get_dispatcher
from shared.schemas.schemas import (
    OTPRequest,
    OTPRequestResponse,
    OTPVerifyRequest,
    OTPVerifyResponse,
    ProfileResponse,
)
from shared.utils.security import create_access_token

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/request-otp",
    response_model=OTPRequestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_otp(
    data: OTPRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Issue a 6-digit code for the phone number.
    Rejected with 429 if the previous code was sent less than 45s ago.
    Delivery happens after the response; a failed delivery does not fail
    this request.
    """
    code = await request_challenge(db, data.phone)
    await db.commit()
    background_tasks.add_task(dispatch_code, dispatcher, data.phone, code)
    return OTPRequestResponse(expires_in=settings.OTP_TTL_SECONDS)


@router.post("/verify-otp", response_model=OTPVerifyResponse)
async def verify_otp(
    data: OTPVerifyRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Verify the code. On success the challenge is consumed, the profile is
    found or created with phone_verified=true, and an access token issued.
    """
    profile, is_new_user = await verify_challenge(
        db,
        data.phone,
        data.code,
        full_name=data.full_name,
        email=str(data.email) if data.email else None,
    )
    await db.commit()

    access_token, _ = create_access_token(
        profile_id=str(profile.id),
        role=profile.role.value,
        phone=profile.phone,
    )
    return OTPVerifyResponse(
        profile=ProfileResponse.model_validate(profile),
        needsProfileCompletion=needs_profile_completion(profile, is_new_user),
        is_new_user=is_new_user,
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
