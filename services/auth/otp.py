"""
services/auth/otp.py
Phone OTP challenges: issue, throttle, verify, and find-or-create the
profile behind the phone number.

Only sha256(code) is stored. One challenge per phone (upsert), at most
OTP_MAX_ATTEMPTS wrong guesses, deleted on first successful use.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.dispatcher import DeliveryResult, NotificationDispatcher
from shared.models.models import OTPChallenge, Profile, ProfileRole
from shared.utils.errors import RateLimitedError, ServiceError
from shared.utils.security import constant_time_equals, generate_otp_code, hash_token
from shared.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_NAME = "Customer"


# ── Errors ────────────────────────────────────────────────────

class OtpRateLimited(RateLimitedError):
    code = "rate_limited"
    message = "Please wait before requesting another OTP"


class OtpNotFound(ServiceError):
    code = "otp_not_found"
    message = "No OTP found for this phone. Please request a new one."


class OtpExpired(ServiceError):
    code = "otp_expired"
    message = "OTP has expired. Please request a new one."


class OtpAttemptsExceeded(ServiceError):
    code = "otp_attempts_exceeded"
    message = "Too many failed attempts. Please request a new OTP."


class OtpInvalid(ServiceError):
    code = "otp_invalid"


# ── Helpers ───────────────────────────────────────────────────

async def _get_challenge(db: AsyncSession, phone: str) -> Optional[OTPChallenge]:
    result = await db.execute(select(OTPChallenge).where(OTPChallenge.phone == phone))
    return result.scalar_one_or_none()


async def _find_or_create_profile(
    db: AsyncSession,
    phone: str,
    full_name: Optional[str],
    email: Optional[str],
) -> tuple[Profile, bool]:
    result = await db.execute(select(Profile).where(Profile.phone == phone))
    profile = result.scalar_one_or_none()

    if profile is None:
        profile = Profile(
            phone=phone,
            full_name=full_name or DEFAULT_CUSTOMER_NAME,
            email=email,
            role=ProfileRole.CUSTOMER,
            phone_verified=True,
        )
        db.add(profile)
        await db.flush()
        logger.info(f"Created customer profile {profile.id} for {phone}")
        return profile, True

    profile.phone_verified = True
    if full_name:
        profile.full_name = full_name
    if email:
        profile.email = email
    await db.flush()
    return profile, False


def needs_profile_completion(profile: Profile, is_new_user: bool) -> bool:
    if not is_new_user:
        return False
    return (
        not profile.full_name
        or profile.full_name == DEFAULT_CUSTOMER_NAME
        or not profile.email
    )


# ── Operations ────────────────────────────────────────────────

async def request_challenge(
    db: AsyncSession,
    phone: str,
    purpose: str = "login",
    now: Optional[datetime] = None,
) -> str:
    """
    Issue a fresh code for phone, replacing any earlier challenge.
    Returns the plaintext code so the caller can dispatch it; it is
    never persisted.
    """
    now = now or utcnow()
    challenge = await _get_challenge(db, phone)

    if challenge is not None:
        elapsed = (now - as_utc(challenge.last_sent_at)).total_seconds()
        if elapsed < settings.OTP_RESEND_COOLDOWN_SECONDS:
            raise OtpRateLimited(
                retry_in_seconds=math.ceil(settings.OTP_RESEND_COOLDOWN_SECONDS - elapsed)
            )
    else:
        challenge = OTPChallenge(phone=phone)
        db.add(challenge)

    code = generate_otp_code()
    challenge.code_hash = hash_token(code)
    challenge.purpose = purpose
    challenge.expires_at = now + timedelta(seconds=settings.OTP_TTL_SECONDS)
    challenge.attempts = 0
    challenge.last_sent_at = now
    challenge.created_at = now

    try:
        await db.flush()
    except IntegrityError:
        # A concurrent request inserted the challenge first
        raise OtpRateLimited(retry_in_seconds=settings.OTP_RESEND_COOLDOWN_SECONDS)
    return code


async def verify_challenge(
    db: AsyncSession,
    phone: str,
    code: str,
    full_name: Optional[str] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Profile, bool]:
    """
    Check code against the live challenge for phone.
    Returns (profile, is_new_user); the challenge is consumed on success.
    """
    now = now or utcnow()
    challenge = await _get_challenge(db, phone)

    if challenge is None:
        raise OtpNotFound()
    if as_utc(challenge.expires_at) < now:
        raise OtpExpired()
    if challenge.attempts >= settings.OTP_MAX_ATTEMPTS:
        raise OtpAttemptsExceeded()

    if not constant_time_equals(hash_token(code), challenge.code_hash):
        await db.execute(
            update(OTPChallenge)
            .where(OTPChallenge.id == challenge.id)
            .values(attempts=OTPChallenge.attempts + 1)
        )
        # The failed attempt must survive the rollback of this request
        await db.commit()
        await db.refresh(challenge)
        remaining = max(0, settings.OTP_MAX_ATTEMPTS - challenge.attempts)
        raise OtpInvalid(
            f"Invalid OTP. {remaining} attempts remaining.",
            attempts_remaining=remaining,
        )

    result = await db.execute(delete(OTPChallenge).where(OTPChallenge.id == challenge.id))
    if result.rowcount == 0:
        # Consumed by a concurrent verify
        raise OtpNotFound()

    return await _find_or_create_profile(db, phone, full_name, email)


def dispatch_code(dispatcher: NotificationDispatcher, phone: str, code: str) -> DeliveryResult:
    """
    Send the code through the notification boundary. A failed dispatch
    leaves the challenge valid; the code is logged for manual recovery.
    """
    minutes = settings.OTP_TTL_SECONDS // 60
    message = f"Your verification code is {code}. It expires in {minutes} minutes. Do not share it."
    try:
        result = dispatcher.dispatch(
            phone,
            settings.OTP_CHANNEL,
            "Verification code",
            message,
            {"kind": "otp", "redact": True},
        )
    except Exception as e:
        result = DeliveryResult(False, settings.OTP_CHANNEL, phone, error=str(e))

    if not result.success:
        logger.warning(f"OTP dispatch to {phone} failed ({result.error}); manual recovery code: {code}")
    return result
