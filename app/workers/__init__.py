"""
Dramatiq worker infrastructure for async task processing.

This module sets up the broker for Dramatiq workers and provides
shared configuration for all worker modules. Tests and local runs
without Redis use the in-memory StubBroker (EXPORT_BROKER=stub).
"""
import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker

from app.config import settings

if settings.export_broker == "stub":
    broker = StubBroker()
    broker.emit_after("process_boot")
else:
    broker = RedisBroker(url=settings.redis_url)

dramatiq.set_broker(broker)
