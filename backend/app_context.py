"""Wiring of stores, adapters, pipeline and scheduler for the API and CLI."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from config import SCHEDULER_THROTTLE_SECONDS, SCHEDULER_WORKERS
from database import DigestDatastore, DigestRepository, HistoryStore, RecipientStore, get_repository, utc_now
from scheduler import DigestScheduler
from services.digest_generator import DigestGenerator, get_generator
from services.chat_service import ChatService
from services.digest_pipeline import DigestPipeline
from services.push_sender import ExpoPushClient


@dataclass
class AppContext:
    datastore: DigestDatastore
    recipients: RecipientStore
    history: HistoryStore
    generator: DigestGenerator
    dispatcher: ExpoPushClient
    pipeline: DigestPipeline
    scheduler: DigestScheduler
    chat: ChatService

    def close(self) -> None:
        self.scheduler.shutdown()
        self.dispatcher.close()


def build_context(
    repository: DigestRepository | None = None,
    generator: DigestGenerator | None = None,
    dispatcher: ExpoPushClient | None = None,
    clock: Callable[[], datetime] = utc_now,
    workers: int = SCHEDULER_WORKERS,
    throttle_seconds: float = SCHEDULER_THROTTLE_SECONDS,
    sleep: Callable[[float], None] | None = None,
) -> AppContext:
    datastore = DigestDatastore(repository or get_repository(), clock=clock)
    recipients = RecipientStore(datastore)
    history = HistoryStore(datastore)
    generator = generator or get_generator()
    dispatcher = dispatcher or ExpoPushClient()
    pipeline = DigestPipeline(generator, history, dispatcher)
    scheduler_kwargs = {"sleep": sleep} if sleep else {}
    scheduler = DigestScheduler(
        recipients,
        history,
        pipeline,
        workers=workers,
        throttle_seconds=throttle_seconds,
        clock=clock,
        **scheduler_kwargs,
    )
    chat = ChatService(generator)
    return AppContext(datastore, recipients, history, generator, dispatcher, pipeline, scheduler, chat)
