import asyncio

from .config import Settings
from .connector import JetstreamConnector
from .delivery_queue import DeliveryQueue
from .processor import EventProcessor
from .producer import QueueProducer
from .state_store import StateStore
from .webhook import WebhookClient


# process-wide owner of the single feed connection and the stats record
class AppState:
    def __init__(self):
        self.settings: Settings | None = None
        self.store: StateStore | None = None
        self.queue: DeliveryQueue | None = None
        self.producer: QueueProducer | None = None
        self.processor: EventProcessor | None = None
        self.connector: JetstreamConnector | None = None
        self.webhook: WebhookClient | None = None
        self.consumer_tasks: list[asyncio.Task] = []


# global app state
app_state = AppState()
