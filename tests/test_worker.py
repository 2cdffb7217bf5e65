import threading
import time
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from payflow.checkout_service import CheckoutService
from payflow.events import EventObserver
from payflow.gateway import GatewayResult, SimulatedGateway
from payflow.jobs import JobOptions
from payflow.models import Payment, PaymentMethod, PaymentStatus, Product
from payflow.payment_service import PaymentService, PROCESS_PAYMENT
from payflow.schemas import CheckoutCreate, CheckoutItemIn, PaymentCreate
from payflow.worker import PaymentWorker, WorkerPool, LogNotifier


@pytest.fixture
def payments(db, queue):
    return PaymentService(db, queue)


@pytest.fixture
def pending_payment(db, user, products, payments):
    first, _ = products
    checkout = CheckoutService(db).create(CheckoutCreate(
        user_id=user.id, items=[CheckoutItemIn(product_id=first.id, quantity=1)],
    ))
    return payments.create(PaymentCreate(checkout_id=checkout.id, method=PaymentMethod.DEBIT_CARD))


def reload(db, payment_id):
    db.expire_all()
    return db.get(Payment, payment_id)


class RecordingGateway:
    """Approves, remembering the payment status it saw mid-flight."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.seen = []

    def charge(self, payment_id, amount, method, transaction_id=None):
        session = self.session_factory()
        try:
            self.seen.append(session.get(Payment, payment_id).status)
        finally:
            session.close()
        return GatewayResult(approved=True, transaction_id=transaction_id or "txn_recorded",
                             message="Payment processed successfully")


class ExplodingGateway:
    def charge(self, payment_id, amount, method, transaction_id=None):
        raise RuntimeError("gateway connection reset")


def test_end_to_end_checkout_to_completed_payment(db, session_factory, queue, clock, user):
    product = Product(name="Headphones", price=Decimal("99.99"), stock=10)
    db.add(product)
    db.commit()
    checkout = CheckoutService(db).create(CheckoutCreate(
        user_id=user.id, items=[CheckoutItemIn(product_id=product.id, quantity=2)],
    ))
    payment = PaymentService(db, queue).create(PaymentCreate(checkout_id=checkout.id, method=PaymentMethod.PIX))

    assert payment.amount == Decimal("199.98")
    assert payment.status == PaymentStatus.PENDING

    gateway = RecordingGateway(session_factory)
    worker = PaymentWorker(queue, session_factory, gateway=gateway, notifier=LogNotifier(latency=0))

    assert worker.run_once() is None  # still inside the initial delay
    clock.advance(ms=1000)
    job = worker.run_once()

    assert job is not None
    assert gateway.seen == [PaymentStatus.PROCESSING.value]
    done = reload(db, payment.id)
    assert done.status == PaymentStatus.COMPLETED.value
    assert done.transaction_id == "txn_recorded"
    assert done.processed_at is not None
    assert done.gateway_response == "Payment processed successfully"

    finished = queue.get_job(job.id)
    assert finished.state == "completed"
    assert finished.progress == 100
    assert finished.return_value["success"] is True
    assert finished.return_value["transactionId"] == "txn_recorded"


def test_generated_transaction_id(db, clock, worker, pending_payment):
    clock.advance(ms=1000)
    worker.run_once()

    done = reload(db, pending_payment.id)
    assert done.transaction_id.startswith("txn_")


def test_progress_milestones(db, clock, queue, worker, pending_payment):
    subscription = queue.subscribe()
    clock.advance(ms=1000)

    worker.run_once()

    milestones = []
    while (event := subscription.get(timeout=0)) is not None:
        if event.kind == "progress":
            milestones.append(event.data["progress"])
    assert milestones == [10, 30, 50, 80, 100]


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
def test_redelivery_of_terminal_payment_is_noop(db, clock, queue, worker, payments, pending_payment, terminal):
    if terminal == "cancelled":
        payments.cancel(pending_payment.id)
    else:
        clock.advance(ms=1000)
        worker.run_once()
    before = reload(db, pending_payment.id)
    status, processed_at = before.status, before.processed_at

    job = queue.add(PROCESS_PAYMENT, {
        "paymentId": pending_payment.id, "amount": 10.99, "method": "debit_card",
    })
    clock.advance(ms=1000)
    while worker.run_once() is not None:
        pass

    after = reload(db, pending_payment.id)
    assert after.status == status
    assert after.processed_at == processed_at
    result = queue.get_job(job.id).return_value
    assert result["skipped"] is True
    assert result["status"] == status


def test_decline_is_retried_by_queue_then_recorded(db, clock, queue, session_factory, declining_gateway,
                                                   approving_gateway, payments, pending_payment):
    worker = PaymentWorker(queue, session_factory, gateway=declining_gateway, notifier=LogNotifier(latency=0))

    clock.advance(ms=1000)
    job = worker.run_once()
    failed = reload(db, pending_payment.id)
    assert failed.status == PaymentStatus.FAILED.value
    assert failed.failure_reason == "Payment declined by gateway"
    assert queue.get_job(job.id).state == "delayed"

    clock.advance(ms=2000)
    assert worker.run_once().id == job.id
    clock.advance(ms=4000)
    assert worker.run_once().id == job.id

    exhausted = queue.get_job(job.id)
    assert exhausted.state == "failed"
    assert exhausted.attempts_made == 3
    assert reload(db, pending_payment.id).status == PaymentStatus.FAILED.value

    # operator retry reopens it
    payments.retry_failed_payment(pending_payment.id)
    reopened = reload(db, pending_payment.id)
    assert reopened.status == PaymentStatus.PENDING.value
    assert reopened.failure_reason is None

    worker.gateway = approving_gateway
    clock.advance(ms=5000)
    retry_job = worker.run_once()
    assert retry_job.data["retryCount"] == 1
    assert reload(db, pending_payment.id).status == PaymentStatus.COMPLETED.value


def test_unexpected_error_marks_payment_failed_and_reraises_to_queue(db, clock, queue, session_factory,
                                                                     pending_payment):
    worker = PaymentWorker(queue, session_factory, gateway=ExplodingGateway(), notifier=LogNotifier(latency=0))

    clock.advance(ms=1000)
    job = worker.run_once()

    payment = reload(db, pending_payment.id)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason == "Internal processing error"
    after = queue.get_job(job.id)
    assert after.state == "delayed"
    assert after.failed_reason == "gateway connection reset"


def test_invalid_payload_fails_without_retry(db, clock, queue, worker, pending_payment):
    # swap in a zero-amount payment; the regular job now points at nothing
    payment = Payment(checkout_id=pending_payment.checkout_id, amount=Decimal("0"), method="pix", status="pending")
    db.query(Payment).filter_by(id=pending_payment.id).delete()
    db.add(payment)
    db.commit()

    job = queue.add(PROCESS_PAYMENT, {"paymentId": payment.id, "amount": 0, "method": "pix"},
                    JobOptions(attempts=3))
    clock.advance(ms=1000)
    while worker.run_once() is not None:
        pass

    assert queue.get_job(job.id).state == "failed"
    assert queue.get_job(job.id).attempts_made == 1
    assert reload(db, payment.id).failure_reason == "Internal processing error"


def test_missing_payment_fails_job(queue, worker):
    job = queue.add(PROCESS_PAYMENT, {"paymentId": "00000000-0000-0000-0000-000000000000",
                                      "amount": 5, "method": "pix"}, JobOptions(attempts=3))

    worker.run_once()

    assert queue.get_job(job.id).state == "failed"


def test_unknown_job_kind_fails(queue, worker):
    job = queue.add("mystery", {})

    worker.run_once()

    assert queue.get_job(job.id).state == "failed"
    assert "Unknown job type" in queue.get_job(job.id).failed_reason


def test_notification_job_leaves_payment_alone(db, queue, session_factory, approving_gateway, payments,
                                               pending_payment, mocker):
    notifier = LogNotifier(latency=0)
    send = mocker.spy(notifier, "send")
    worker = PaymentWorker(queue, session_factory, gateway=approving_gateway, notifier=notifier)

    job = payments.send_payment_notification(pending_payment.id, "failure")
    processed = worker.run_once()

    assert processed.id == job.id
    send.assert_called_once_with("payment-failure", pending_payment.id, recipient="test@example.com", amount=10.99)
    result = queue.get_job(job.id).return_value
    assert result["success"] is True
    assert result["type"] == "payment-failure"
    assert reload(db, pending_payment.id).status == PaymentStatus.PENDING.value


def test_priority_path_duplicate_job_noops(db, clock, queue, worker, payments, user, products):
    first, _ = products
    checkout = CheckoutService(db).create(CheckoutCreate(
        user_id=user.id, items=[CheckoutItemIn(product_id=first.id, quantity=3)],
    ))

    payment = payments.process_payment_with_priority(
        PaymentCreate(checkout_id=checkout.id, method=PaymentMethod.CREDIT_CARD), priority=1,
    )
    priority_job = worker.run_once()
    assert priority_job.options.priority == 1
    completed = reload(db, payment.id)
    assert completed.status == PaymentStatus.COMPLETED.value

    clock.advance(ms=1000)
    regular_job = worker.run_once()
    assert queue.get_job(regular_job.id).return_value["skipped"] is True
    assert reload(db, payment.id).processed_at == completed.processed_at


def event_count(kind, queue_name="payment-processing"):
    value = REGISTRY.get_sample_value("payment_queue_events_total", {"queue": queue_name, "kind": kind})
    return value or 0


def test_observer_turns_events_into_counters(clock, queue, worker, pending_payment):
    observer = EventObserver(queue.subscribe())
    before = {kind: event_count(kind) for kind in ("waiting", "active", "completed", "progress")}
    clock.advance(ms=1000)

    worker.run_once()
    observer.drain()

    assert event_count("waiting") - before["waiting"] == 1
    assert event_count("active") - before["active"] == 1
    assert event_count("completed") - before["completed"] == 1
    assert event_count("progress") - before["progress"] == 5


def test_observer_thread(queue):
    observer = EventObserver(queue.subscribe(), poll_timeout=0.05)
    before = event_count("waiting")
    observer.start()
    try:
        queue.add("job", {})
        deadline = time.time() + 5
        while event_count("waiting") - before < 1 and time.time() < deadline:
            time.sleep(0.01)
    finally:
        observer.stop()

    assert event_count("waiting") - before == 1


def test_simulated_gateway_is_seedable():
    import random

    slept = []
    gateway = SimulatedGateway(decline_rate=0.5, min_latency_ms=10, max_latency_ms=10,
                               rng=random.Random(7), sleep=slept.append)

    outcomes = [gateway.charge("p", 1, "pix").approved for _ in range(20)]

    assert slept == [0.01] * 20
    assert True in outcomes and False in outcomes


def test_worker_pool_drains_queue(db, session_factory, queue_session_factory, user, products, approving_gateway):
    from payflow.jobs import JobQueue

    queue = JobQueue(queue_session_factory, "pool-test")
    service = PaymentService(db, queue)
    first, _ = products
    payment_ids = []
    for _ in range(4):
        checkout = CheckoutService(db).create(CheckoutCreate(
            user_id=user.id, items=[CheckoutItemIn(product_id=first.id, quantity=1)],
        ))
        payment_ids.append(service.create(PaymentCreate(checkout_id=checkout.id, method=PaymentMethod.PIX)).id)

    pool = WorkerPool(
        lambda: PaymentWorker(queue, session_factory, gateway=approving_gateway, notifier=LogNotifier(latency=0)),
        concurrency=2,
        poll_interval=0.05,
    )
    pool.start()
    try:
        deadline = time.time() + 15
        while queue.get_counts()["completed"] < 4 and time.time() < deadline:
            time.sleep(0.05)
    finally:
        pool.stop()

    assert queue.get_counts()["completed"] == 4
    statuses = {reload(db, payment_id).status for payment_id in payment_ids}
    assert statuses == {PaymentStatus.COMPLETED.value}
    assert not any(thread.is_alive() for thread in threading.enumerate() if thread.name.startswith("payment-worker"))
