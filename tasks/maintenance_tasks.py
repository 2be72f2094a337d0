"""
tasks/maintenance_tasks.py
Periodic housekeeping that keeps derived data honest:
- expired OTP challenges are deleted (the store has no TTL index)
- worker current_jobs is recomputed from active bookings
- wallet balances are audited against their append-only ledgers

All tasks are idempotent: running twice has no side effect.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import case, delete, func, select
from sqlalchemy.orm import Session

from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    ASSIGNABLE_ROLES,
    Booking,
    OTPChallenge,
    Profile,
    TransactionType,
    WalletTransaction,
)
from shared.utils.timeutils import utcnow
from tasks.celery_app import celery_app
from tasks.notification_tasks import DatabaseTask

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

def purge_expired_challenges(db: Session, now: Optional[datetime] = None) -> int:
    result = db.execute(delete(OTPChallenge).where(OTPChallenge.expires_at < (now or utcnow())))
    db.commit()
    return result.rowcount or 0


def recompute_all_worker_jobs(db: Session) -> Dict[str, Tuple[int, int]]:
    """Returns {profile_id: (stored, actual)} for every worker that drifted."""
    active_counts = dict(
        db.execute(
            select(Booking.employee_id, func.count(Booking.id))
            .where(
                Booking.employee_id.is_not(None),
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
            .group_by(Booking.employee_id)
        ).all()
    )
    workers = db.execute(select(Profile).where(Profile.role.in_(ASSIGNABLE_ROLES))).scalars().all()

    drift = {}
    for worker in workers:
        actual = active_counts.get(worker.id, 0)
        if worker.current_jobs != actual:
            drift[str(worker.id)] = (worker.current_jobs, actual)
            worker.current_jobs = actual
    db.commit()
    return drift


def find_wallet_discrepancies(db: Session) -> List[Tuple[str, Decimal, Decimal]]:
    """
    Signed ledger sum per user (credit and refund add, debit subtracts)
    compared with the stored balance. Returns (user_id, balance, ledger_sum).
    """
    signed = case(
        (WalletTransaction.transaction_type == TransactionType.DEBIT, -WalletTransaction.amount),
        else_=WalletTransaction.amount,
    )
    ledger = dict(
        db.execute(
            select(WalletTransaction.user_id, func.sum(signed)).group_by(WalletTransaction.user_id)
        ).all()
    )
    rows = db.execute(select(Profile.id, Profile.wallet_balance)).all()

    mismatches = []
    for user_id, balance in rows:
        ledger_sum = Decimal(str(ledger.get(user_id) or 0)).quantize(Decimal("0.01"))
        if Decimal(balance).quantize(Decimal("0.01")) != ledger_sum:
            mismatches.append((str(user_id), Decimal(balance), ledger_sum))
    return mismatches


# ── Periodic Tasks ─────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask)
def purge_expired_otp_challenges(self):
    """Beat task: runs every 10 minutes."""
    db = self.get_session()
    try:
        purged = purge_expired_challenges(db)
        logger.info(f"Purged {purged} expired OTP challenges")
        return purged
    except Exception as e:
        db.rollback()
        logger.exception(f"purge_expired_otp_challenges failed: {e}")
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask)
def reconcile_worker_jobs(self):
    """Beat task: runs hourly."""
    db = self.get_session()
    try:
        drift = recompute_all_worker_jobs(db)
        for worker_id, (stored, actual) in drift.items():
            logger.warning(f"Worker {worker_id} current_jobs drifted: stored={stored} actual={actual}")
        logger.info(f"Reconciled worker jobs, {len(drift)} corrected")
        return len(drift)
    except Exception as e:
        db.rollback()
        logger.exception(f"reconcile_worker_jobs failed: {e}")
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask)
def audit_wallet_ledgers(self):
    """
    Beat task: runs nightly.
    Only reports; balances are never rewritten automatically.
    """
    db = self.get_session()
    try:
        mismatches = find_wallet_discrepancies(db)
        for user_id, balance, ledger_sum in mismatches:
            logger.error(f"Wallet mismatch for {user_id}: balance={balance} ledger={ledger_sum}")
        logger.info(f"Wallet audit complete, {len(mismatches)} mismatches")
        return len(mismatches)
    except Exception as e:
        db.rollback()
        logger.exception(f"audit_wallet_ledgers failed: {e}")
    finally:
        db.close()
