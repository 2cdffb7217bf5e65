import structlog

from payflow import config
from payflow.jobs import COMPLETED, FAILED
from payflow.schemas import QueueStatus

logger = structlog.get_logger(__name__)


class QueueAdministrator:
    def __init__(self, queue):
        self.queue = queue

    def get_queue_status(self):
        counts = self.queue.get_counts()
        return QueueStatus(paused=self.queue.is_paused(), **counts)

    def pause(self):
        self.queue.pause()
        logger.info("queue_paused", queue=self.queue.name)

    def resume(self):
        self.queue.resume()
        logger.info("queue_resumed", queue=self.queue.name)

    def clean(self, grace_ms=None, limit=None):
        grace_ms = config.CLEAN_GRACE_MS if grace_ms is None else grace_ms
        limit = config.CLEAN_LIMIT if limit is None else limit
        # two independent sweeps, completed first
        completed = self.queue.clean(grace_ms, limit, COMPLETED)
        failed = self.queue.clean(grace_ms, limit, FAILED)
        return {"completed": len(completed), "failed": len(failed)}
