import asyncio
import logging

from .delivery_queue import DeliveryQueue
from .models import QueueMessage
from .webhook import WebhookClient

log = logging.getLogger("delivery")

ERROR_PAUSE = 1.0


# deliver one message; ack on success, release for retry on failure
async def deliver_message(queue: DeliveryQueue, webhook: WebhookClient, message: QueueMessage) -> bool:
    event = message.task.event
    try:
        await webhook.deliver(event)
    except Exception as e:
        dead = await queue.retry(message, error=str(e) or type(e).__name__)
        if dead:
            log.error(
                "event %d dead-lettered after %d attempts: %s",
                event.time_us, message.attempt, e,
            )
        else:
            log.warning(
                "delivery of event %d failed (attempt %d), will retry: %s",
                event.time_us, message.attempt, e,
            )
        return False
    await queue.ack(message)
    log.info(
        "delivered event %d for collection: %s",
        event.time_us, event.collection or "non-commit",
    )
    return True


async def process_batch(
    queue: DeliveryQueue, webhook: WebhookClient, messages: list[QueueMessage]
) -> tuple[int, int]:
    """Deliver a batch concurrently. Returns (delivered, failed)."""
    log.debug("processing batch of %d messages", len(messages))
    results = await asyncio.gather(
        *(deliver_message(queue, webhook, m) for m in messages),
        return_exceptions=True,
    )
    delivered = 0
    for message, result in zip(messages, results):
        if isinstance(result, BaseException):
            # ack/retry itself failed; the lease expires and the queue redelivers
            log.error("message %d left leased: %s", message.id, result)
        elif result:
            delivered += 1
    return delivered, len(messages) - delivered


# main worker loop
async def consumer_loop(
    queue: DeliveryQueue,
    webhook: WebhookClient,
    max_batch_size: int = 10,
    max_batch_wait: float = 5.0,
) -> None:
    while True:
        try:
            batch = await queue.receive_batch(max_batch_size, max_batch_wait)
            await process_batch(queue, webhook, batch)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("delivery worker error; pausing")
            await asyncio.sleep(ERROR_PAUSE)
