"""
Payment status state machine.

Every status change is a compare-and-set: an UPDATE guarded by the
expected current status. A zero row count means someone else moved the
payment first (or it never was in an allowed state) and nothing changed.

    pending    -> processing | cancelled
    processing -> completed | failed
    failed     -> pending                (operator retry)

Queue redelivery of a job that already ran may also take a payment from
processing or failed back to processing.
"""
from sqlalchemy import update

from payflow.database import utcnow
from payflow.models import Payment, PaymentStatus

PENDING = PaymentStatus.PENDING.value
PROCESSING = PaymentStatus.PROCESSING.value
COMPLETED = PaymentStatus.COMPLETED.value
FAILED = PaymentStatus.FAILED.value
CANCELLED = PaymentStatus.CANCELLED.value

TRANSITIONS = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {COMPLETED, FAILED},
    FAILED: {PENDING},
    COMPLETED: set(),
    CANCELLED: set(),
}
REDELIVERY_TRANSITIONS = {
    PROCESSING: {PROCESSING},
    FAILED: {PROCESSING},
}


def allowed_sources(target, redelivery=False):
    sources = {source for source, targets in TRANSITIONS.items() if target in targets}
    if redelivery:
        sources |= {source for source, targets in REDELIVERY_TRANSITIONS.items() if target in targets}
    return sources


def transition(db, payment_id, sources, target, **values):
    """
    Move ``payment_id`` to ``target`` if its status is one of ``sources``.

    Commits and returns True when the row changed.
    """
    values["status"] = target
    values["updated_at"] = utcnow()
    changed = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(sorted(sources)))
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if changed:
        # drop any stale copy held by this session
        db.expire_all()
    return changed == 1
