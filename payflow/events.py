"""
Event observer: turns queue lifecycle events into structured log lines
and Prometheus counters per queue and kind.
"""
import threading

import structlog

from payflow import metrics

logger = structlog.get_logger(__name__)


class EventObserver:
    def __init__(self, subscription, poll_timeout=0.5):
        self.subscription = subscription
        self.poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._thread = None

    def handle(self, event):
        metrics.record_queue_event(event.queue, event.kind)
        log = logger.bind(queue=event.queue, job_id=event.job_id, job_name=event.job_name)
        kind = event.kind

        if kind == "completed":
            result = event.data.get("returnvalue") or {}
            if not isinstance(result, dict):
                log.debug("job_result_unreadable", returnvalue=result)
            elif result.get("skipped"):
                log.info("job_completed_noop", payment_id=result.get("paymentId"), status=result.get("status"))
            elif result.get("success") and result.get("transactionId"):
                log.info("payment_job_succeeded", payment_id=result.get("paymentId"),
                         transaction_id=result.get("transactionId"))
            elif result.get("success"):
                log.info("job_completed")
            else:
                log.warning("payment_job_unsuccessful", payment_id=result.get("paymentId"),
                            reason=result.get("reason"))
        elif kind == "failed":
            log.error("job_failed", reason=event.data.get("failedReason"),
                      attempts_made=event.data.get("attemptsMade"))
        elif kind == "stalled":
            log.warning("job_stalled")
        elif kind == "progress":
            log.debug("job_progress", progress=event.data.get("progress"))
        elif kind == "delayed":
            log.info("job_delayed", delay=event.data.get("delay"))
        elif kind in ("active", "waiting", "removed"):
            log.info(f"job_{kind}")
        else:
            log.info(f"queue_{kind}")

    def drain(self):
        """Handle everything already buffered without blocking."""
        handled = 0
        while True:
            event = self.subscription.get(timeout=0)
            if event is None:
                return handled
            self.handle(event)
            handled += 1

    def run(self):
        while not self._stop.is_set():
            event = self.subscription.get(timeout=self.poll_timeout)
            if event is not None:
                self.handle(event)

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="queue-event-observer", daemon=True)
        self._thread.start()

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.subscription.close()
