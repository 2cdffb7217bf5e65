"""
Payment worker.

Pulls jobs off the payment queue and runs them. ``process-payment`` drives
the payment through the gateway; ``send-notification`` is a side channel
that never touches payment status.
"""
import signal
import threading
import time

import structlog

from payflow import config
from payflow.database import SessionLocal, QueueSessionLocal, QueueBase, queue_engine, utcnow
from payflow.errors import (
    PaymentCoreError, ValidationError, NotFoundError, PaymentDeclinedError, InternalProcessingError,
)
from payflow.events import EventObserver
from payflow.gateway import build_gateway
from payflow.jobs import JobQueue
from payflow.log_config import setup_logging
from payflow.models import Payment
from payflow.payment_service import PROCESS_PAYMENT, SEND_NOTIFICATION
from payflow.payment_store import transition, allowed_sources, PROCESSING, COMPLETED, FAILED

logger = structlog.get_logger(__name__)


class LogNotifier:
    """Delivers notifications to the log. Swap for mail/SMS/push."""

    def __init__(self, latency=0.5, sleep=time.sleep):
        self.latency = latency
        self.sleep = sleep

    def send(self, notification_type, payment_id, recipient=None, amount=None):
        if self.latency:
            self.sleep(self.latency)
        logger.info("notification_sent", type=notification_type, payment_id=payment_id,
                    recipient=recipient, amount=amount)


class PaymentWorker:
    def __init__(self, queue, session_factory=SessionLocal, gateway=None, notifier=None):
        self.queue = queue
        self.session_factory = session_factory
        self.gateway = gateway or build_gateway()
        self.notifier = notifier or LogNotifier()

    def process(self, job):
        if job.name == PROCESS_PAYMENT:
            return self.process_payment(job)
        if job.name == SEND_NOTIFICATION:
            return self.send_notification(job)
        raise ValidationError(f"Unknown job type: {job.name}")

    def process_payment(self, job):
        data = job.data
        payment_id = data.get("paymentId")
        retry_count = data.get("retryCount") or 0
        log = logger.bind(payment_id=payment_id, job_id=job.id)
        log.info("payment_processing_started", amount=data.get("amount"), method=data.get("method"),
                 attempt=retry_count + 1, delivery=job.attempts_made + 1)

        db = self.session_factory()
        try:
            job.update_progress(10)
            sources = allowed_sources(PROCESSING, redelivery=job.redelivered)
            if not transition(db, payment_id, sources, PROCESSING):
                payment = db.get(Payment, payment_id) if payment_id else None
                if payment is None:
                    raise NotFoundError(f"Payment with ID {payment_id} not found")
                log.info("payment_processing_skipped", status=payment.status)
                return {"success": True, "skipped": True, "paymentId": payment_id, "status": payment.status}

            try:
                job.update_progress(30)
                self._validate(data)
                job.update_progress(50)

                result = self.gateway.charge(payment_id, data["amount"], data["method"], data.get("transactionId"))
                job.update_progress(80)

                if not result.approved:
                    transition(
                        db, payment_id, {PROCESSING}, FAILED,
                        failure_reason=result.message,
                        gateway_response="Payment processing failed",
                        processed_at=utcnow(),
                    )
                    log.warning("payment_declined", reason=result.message)
                    raise PaymentDeclinedError(result.message)

                processed_at = utcnow()
                completed = transition(
                    db, payment_id, {PROCESSING}, COMPLETED,
                    processed_at=processed_at,
                    gateway_response=result.message,
                    transaction_id=result.transaction_id,
                )
                if not completed:
                    payment = db.get(Payment, payment_id)
                    log.warning("payment_completion_lost", status=payment.status if payment else None)
                    return {"success": True, "skipped": True, "paymentId": payment_id,
                            "status": payment.status if payment else None}

                job.update_progress(100)
                log.info("payment_completed", transaction_id=result.transaction_id)
                return {
                    "success": True,
                    "paymentId": payment_id,
                    "transactionId": result.transaction_id,
                    "processedAt": processed_at.isoformat(),
                }
            except PaymentDeclinedError:
                raise
            except Exception as e:
                log.exception("payment_processing_error")
                self._mark_internal_failure(db, payment_id)
                if isinstance(e, PaymentCoreError):
                    raise
                raise InternalProcessingError(str(e) or e.__class__.__name__) from e
        finally:
            db.close()

    def send_notification(self, job):
        data = job.data
        notification_type = data.get("type")
        payment_id = data.get("paymentId")
        logger.info("notification_sending", type=notification_type, payment_id=payment_id, job_id=job.id)

        job.update_progress(25)
        self.notifier.send(notification_type, payment_id, recipient=data.get("email"), amount=data.get("amount"))
        job.update_progress(75)
        job.update_progress(100)
        return {
            "success": True,
            "type": notification_type,
            "paymentId": payment_id,
            "sentAt": utcnow().isoformat(),
        }

    def run_once(self):
        """Reserve and run one job. Returns the job, or None when nothing was ready."""
        job = self.queue.reserve()
        if job is None:
            return None
        try:
            result = self.process(job)
        except Exception as e:
            logger.warning("job_attempt_failed", job_id=job.id, job_name=job.name, error=str(e))
            self.queue.fail(job, e)
        else:
            self.queue.complete(job, result)
        return job

    def run(self, stop_event, poll_interval=None):
        poll_interval = config.WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        logger.info("worker_started", queue=self.queue.name)
        while not stop_event.is_set():
            try:
                job = self.run_once()
            except Exception:
                # queue store unavailable; back off and try again
                logger.exception("worker_loop_error", queue=self.queue.name)
                job = None
            if job is None:
                stop_event.wait(poll_interval)
        logger.info("worker_stopped", queue=self.queue.name)

    def _validate(self, data):
        if not data.get("amount") or data["amount"] <= 0:
            raise ValidationError("Invalid payment amount")
        if not data.get("method"):
            raise ValidationError("Payment method is required")
        if not data.get("paymentId"):
            raise ValidationError("Payment ID is required")

    def _mark_internal_failure(self, db, payment_id):
        try:
            db.rollback()
            transition(
                db, payment_id, {PROCESSING}, FAILED,
                failure_reason="Internal processing error",
                gateway_response="Payment processing failed",
                processed_at=utcnow(),
            )
        except Exception:
            logger.exception("payment_failure_not_recorded", payment_id=payment_id)


class WorkerPool:
    """N PaymentWorkers sharing one queue, each on its own thread."""

    def __init__(self, worker_factory, concurrency=None, poll_interval=None):
        self.worker_factory = worker_factory
        self.concurrency = concurrency or config.WORKER_CONCURRENCY
        self.poll_interval = poll_interval
        self.stop_event = threading.Event()
        self.threads = []

    def start(self):
        self.stop_event.clear()
        for index in range(self.concurrency):
            worker = self.worker_factory()
            thread = threading.Thread(
                target=worker.run,
                args=(self.stop_event, self.poll_interval),
                name=f"payment-worker-{index}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)
        logger.info("worker_pool_started", concurrency=self.concurrency)

    def stop(self, timeout=10):
        self.stop_event.set()
        for thread in self.threads:
            thread.join(timeout)
        self.threads = []
        logger.info("worker_pool_stopped")


def build_queue():
    return JobQueue(QueueSessionLocal, config.QUEUE_NAME, stall_timeout_ms=config.QUEUE_STALL_TIMEOUT_MS)


def main():
    setup_logging()
    QueueBase.metadata.create_all(bind=queue_engine)

    queue = build_queue()
    observer = EventObserver(queue.subscribe())
    pool = WorkerPool(lambda: PaymentWorker(queue))

    def shutdown(sig, frame):
        logger.info("worker_shutdown_signal_received", signal=sig)
        pool.stop_event.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    observer.start()
    pool.start()
    try:
        while not pool.stop_event.wait(1.0):
            pass
    finally:
        pool.stop()
        observer.stop()


if __name__ == "__main__":
    main()
