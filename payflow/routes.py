from typing import Literal

from fastapi import APIRouter, Depends, Request

from payflow.auth import verify_token
from payflow.checkout_service import CheckoutService
from payflow.database import SessionLocal
from payflow.payment_service import PaymentService
from payflow.queue_admin import QueueAdministrator
from payflow.schemas import CheckoutCreate, CheckoutUpdate, PaymentCreate

router = APIRouter(dependencies=[Depends(verify_token)])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_queue(request: Request):
    return request.app.state.payment_queue


def checkouts(db=Depends(get_db)):
    return CheckoutService(db)


def payments(db=Depends(get_db), queue=Depends(get_queue)):
    return PaymentService(db, queue)


def queue_admin(queue=Depends(get_queue)):
    return QueueAdministrator(queue)


# --- checkouts -------------------------------------------------------------

@router.post("/checkouts", status_code=201)
def create_checkout(request: CheckoutCreate, service=Depends(checkouts)):
    return service.create(request)


@router.get("/checkouts")
def list_checkouts(page: int = 1, limit: int = 10, service=Depends(checkouts)):
    return service.find_all(page, limit)


@router.get("/checkouts/user/{user_id}")
def list_user_checkouts(user_id: str, page: int = 1, limit: int = 10, service=Depends(checkouts)):
    return service.find_by_user(user_id, page, limit)


@router.get("/checkouts/{checkout_id}")
def get_checkout(checkout_id: str, service=Depends(checkouts)):
    return service.find_one(checkout_id)


@router.patch("/checkouts/{checkout_id}")
def update_checkout(checkout_id: str, request: CheckoutUpdate, service=Depends(checkouts)):
    return service.update(checkout_id, request)


@router.delete("/checkouts/{checkout_id}", status_code=204)
def delete_checkout(checkout_id: str, service=Depends(checkouts)):
    service.remove(checkout_id)


# --- payments --------------------------------------------------------------

@router.post("/payments", status_code=201)
def create_payment(request: PaymentCreate, service=Depends(payments)):
    return service.create(request)


@router.get("/payments")
def list_payments(page: int = 1, limit: int = 10, service=Depends(payments)):
    return service.find_all(page, limit)


@router.post("/payments/priority", status_code=201)
def create_priority_payment(request: PaymentCreate, priority: int = 0, service=Depends(payments)):
    return service.process_payment_with_priority(request, priority)


@router.post("/payments/delayed", status_code=201)
def create_delayed_payment(request: PaymentCreate, delay: int, service=Depends(payments)):
    return service.process_payment_with_delay(request, delay)


@router.get("/payments/queue/status")
def queue_status(admin=Depends(queue_admin)):
    return admin.get_queue_status()


@router.post("/payments/queue/pause")
def pause_queue(admin=Depends(queue_admin)):
    admin.pause()
    return {"message": "Queue paused successfully"}


@router.post("/payments/queue/resume")
def resume_queue(admin=Depends(queue_admin)):
    admin.resume()
    return {"message": "Queue resumed successfully"}


@router.post("/payments/queue/clean")
def clean_queue(admin=Depends(queue_admin)):
    removed = admin.clean()
    return {"message": "Queue cleaned successfully", "removed": removed}


@router.get("/payments/checkout/{checkout_id}")
def get_payment_by_checkout(checkout_id: str, service=Depends(payments)):
    return service.find_by_checkout(checkout_id)


@router.get("/payments/{payment_id}")
def get_payment(payment_id: str, service=Depends(payments)):
    return service.find_one(payment_id)


@router.get("/payments/{payment_id}/status")
def get_payment_status(payment_id: str, service=Depends(payments)):
    return service.get_status(payment_id)


@router.patch("/payments/{payment_id}/cancel")
def cancel_payment(payment_id: str, service=Depends(payments)):
    return service.cancel(payment_id)


@router.patch("/payments/{payment_id}/retry")
def retry_payment(payment_id: str, service=Depends(payments)):
    service.retry_failed_payment(payment_id)
    return {"message": "Payment retry has been queued"}


@router.post("/payments/{payment_id}/notify")
def notify_payment(payment_id: str, type: Literal["success", "failure"], service=Depends(payments)):
    job = service.send_payment_notification(payment_id, type)
    return {"message": "Notification has been queued", "job_id": job.id}
