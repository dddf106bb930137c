import logging

from .delivery_queue import DeliveryQueue
from .models import DeliveryTask

log = logging.getLogger("producer")


class QueueProducer:
    # QueueUnavailable propagates; nothing is retried here

    def __init__(self, queue: DeliveryQueue):
        self.queue = queue

    async def enqueue(self, task: DeliveryTask) -> int:
        msg_id = await self.queue.send(task)
        log.debug("queued event %d as message %d", task.event.time_us, msg_id)
        return msg_id
