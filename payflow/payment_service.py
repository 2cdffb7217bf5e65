import structlog
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow import config
from payflow.checkout_service import validate_page
from payflow.collaborators import SqlUserDirectory
from payflow.database import utcnow
from payflow.errors import ValidationError, NotFoundError, DuplicatePaymentError, InvalidStateError
from payflow.ids import require_uuid
from payflow.jobs import JobOptions
from payflow.models import Checkout, Payment
from payflow.payment_store import transition, PENDING, CANCELLED, FAILED
from payflow.schemas import PaymentOut, PaymentStatusOut, PaymentPage

logger = structlog.get_logger(__name__)

PROCESS_PAYMENT = "process-payment"
SEND_NOTIFICATION = "send-notification"
NOTIFICATION_TYPES = {"success": "payment-success", "failure": "payment-failure"}


def default_payment_job_options():
    return JobOptions(
        delay=config.PAYMENT_JOB_DELAY,
        attempts=config.PAYMENT_JOB_ATTEMPTS,
        backoff=dict(config.PAYMENT_JOB_BACKOFF),
        remove_on_complete=config.KEEP_COMPLETED_JOBS,
        remove_on_fail=config.KEEP_FAILED_JOBS,
    )


def payment_job_data(payment, retry_count=None):
    data = {
        "paymentId": payment.id,
        "amount": float(payment.amount),
        "method": _value(payment.method),
        "transactionId": payment.transaction_id,
    }
    if retry_count is not None:
        data["retryCount"] = retry_count
    return data


def _value(enum_or_str):
    return getattr(enum_or_str, "value", enum_or_str)


class PaymentService:
    """
    Payment records plus everything that puts payment work on the queue.

    The queue client is passed in; nothing here reaches for a global one.
    """

    def __init__(self, db: Session, queue, users=None):
        self.db = db
        self.queue = queue
        self.users = users or SqlUserDirectory(db)

    def create(self, data):
        require_uuid(data.checkout_id, "checkout")

        checkout = self.db.get(Checkout, data.checkout_id)
        if checkout is None:
            raise NotFoundError(f"Checkout with ID {data.checkout_id} not found")

        if self._existing_payment_id(data.checkout_id) is not None:
            raise DuplicatePaymentError(f"Payment already exists for checkout {data.checkout_id}")

        payment = Payment(
            checkout_id=data.checkout_id,
            amount=checkout.total_amount,
            method=_value(data.method),
            status=PENDING,
            transaction_id=data.transaction_id,
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            # lost the race against a concurrent create for the same checkout
            self.db.rollback()
            raise DuplicatePaymentError(f"Payment already exists for checkout {data.checkout_id}")

        job = self.queue.add(PROCESS_PAYMENT, payment_job_data(payment), default_payment_job_options())
        logger.info("payment_created", payment_id=payment.id, checkout_id=payment.checkout_id,
                    amount=str(payment.amount), method=payment.method, job_id=job.id)
        return PaymentOut.model_validate(payment)

    def find_all(self, page=1, limit=10):
        validate_page(page, limit)
        total = self.db.execute(select(func.count(Payment.id))).scalar_one()
        payments = self.db.execute(
            select(Payment)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return PaymentPage(
            items=[PaymentOut.model_validate(payment) for payment in payments],
            total=total,
            page=page,
            limit=limit,
        )

    def find_one(self, payment_id):
        return PaymentOut.model_validate(self._get(payment_id))

    def get_status(self, payment_id):
        return PaymentStatusOut.model_validate(self._get(payment_id))

    def find_by_checkout(self, checkout_id):
        require_uuid(checkout_id, "checkout")
        payment = self.db.execute(
            select(Payment).where(Payment.checkout_id == checkout_id)
        ).scalar_one_or_none()
        return PaymentOut.model_validate(payment) if payment is not None else None

    def cancel(self, payment_id):
        payment = self._get(payment_id)
        cancelled = transition(
            self.db, payment_id, {PENDING}, CANCELLED,
            failure_reason="Payment cancelled by user",
            processed_at=utcnow(),
        )
        if not cancelled:
            current = self._get(payment_id)
            raise InvalidStateError(
                f"Cannot cancel payment with status {current.status}. Only pending payments can be cancelled."
            )
        logger.info("payment_cancelled", payment_id=payment.id)
        return self.find_one(payment_id)

    def process_payment_with_priority(self, data, priority=0):
        payment = self.create(data)
        # extra job: priority only, default retry policy not applied
        job = self.queue.add(
            PROCESS_PAYMENT,
            payment_job_data(payment),
            JobOptions(
                priority=priority,
                remove_on_complete=config.KEEP_COMPLETED_JOBS,
                remove_on_fail=config.KEEP_FAILED_JOBS,
            ),
        )
        logger.info("payment_priority_job_added", payment_id=payment.id, priority=priority, job_id=job.id)
        return payment

    def process_payment_with_delay(self, data, delay_ms):
        if delay_ms < 0:
            raise ValidationError("delay must not be negative")
        payment = self.create(data)
        job = self.queue.add(
            PROCESS_PAYMENT,
            payment_job_data(payment),
            JobOptions(
                delay=delay_ms,
                remove_on_complete=config.KEEP_COMPLETED_JOBS,
                remove_on_fail=config.KEEP_FAILED_JOBS,
            ),
        )
        logger.info("payment_delayed_job_added", payment_id=payment.id, delay=delay_ms, job_id=job.id)
        return payment

    def retry_failed_payment(self, payment_id):
        self._get(payment_id)
        if not transition(self.db, payment_id, {FAILED}, PENDING, failure_reason=None):
            current = self._get(payment_id)
            raise InvalidStateError(
                f"Only failed payments can be retried (status is {current.status})"
            )

        payment = self._get(payment_id)
        job = self.queue.add(
            PROCESS_PAYMENT,
            payment_job_data(payment, retry_count=1),
            JobOptions(
                delay=config.RETRY_JOB_DELAY,
                attempts=config.RETRY_JOB_ATTEMPTS,
                remove_on_complete=config.KEEP_COMPLETED_JOBS,
                remove_on_fail=config.KEEP_FAILED_JOBS,
            ),
        )
        logger.info("payment_retry_queued", payment_id=payment_id, job_id=job.id)
        return PaymentOut.model_validate(payment)

    def send_payment_notification(self, payment_id, notification_type):
        require_uuid(payment_id, "payment")
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError("Notification type must be 'success' or 'failure'")

        payment = self._get(payment_id)
        checkout = self.db.get(Checkout, payment.checkout_id)
        owner = self.users.get(checkout.user_id) if checkout is not None else None
        recipient = owner.email if owner is not None and owner.email else config.NOTIFICATION_FALLBACK_EMAIL

        job = self.queue.add(
            SEND_NOTIFICATION,
            {
                "type": NOTIFICATION_TYPES[notification_type],
                "paymentId": payment.id,
                "email": recipient,
                "amount": float(payment.amount),
            },
            JobOptions(
                remove_on_complete=config.KEEP_COMPLETED_JOBS,
                remove_on_fail=config.KEEP_FAILED_JOBS,
            ),
        )
        logger.info("payment_notification_queued", payment_id=payment_id, type=notification_type, job_id=job.id)
        return job

    def _existing_payment_id(self, checkout_id):
        return self.db.execute(
            select(Payment.id).where(Payment.checkout_id == checkout_id)
        ).scalar_one_or_none()

    def _get(self, payment_id):
        require_uuid(payment_id, "payment")
        payment = self.db.execute(
            select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment with ID {payment_id} not found")
        return payment
