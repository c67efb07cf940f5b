"""
Event Broker - In-Process Publish/Subscribe
===========================================
Producers push events, consumers whose interest predicate accepts an event
receive it. Delivery is synchronous inside enqueue() and fans out to every
interested consumer; order across consumers is not defined.

Enqueue filters:
  A filter is registered per feature ID with a predicate and a TTL. While it
  is active, events for which the predicate returns True are dropped before
  any consumer sees them. Filters are evicted by a timer when their TTL
  elapses (asyncio call_later when a loop is running, a daemon thread timer
  otherwise) and enqueue() also ignores filters past their deadline.

Thread-safety:
  Consumers and filters are guarded by one lock. Delivery iterates a snapshot
  so remove_consumer() never waits for an in-flight delivery.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from events import Event

logger = logging.getLogger("event_bus")

EventPredicate = Callable[[Event], bool]


class EventConsumer(Protocol):
    """Anything the broker can deliver events to."""

    def accepts(self, event: Event) -> bool: ...

    def consume(self, event: Event) -> None: ...


class EventProducer(Protocol):
    """A long running source of events, e.g. a device connection."""

    async def start_producing(self, broker: "EventBroker") -> None: ...


@dataclass(eq=False)
class EnqueueFilter:
    feature_id: str
    predicate: EventPredicate
    expires_at: float
    _timer: Any = field(default=None, repr=False)

    def is_active(self, now: float) -> bool:
        return now < self.expires_at

    def cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class EventBroker:
    """
    Process-wide event bus.

    enqueue() never raises to the producer: a dropped event or a failing
    consumer is logged and counted, not propagated.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.RLock()
        self._consumers: List[EventConsumer] = []
        self._filters: Dict[str, EnqueueFilter] = {}
        self._producers: Dict[int, asyncio.Task] = {}

        self._stats = {
            "enqueued": 0,
            "delivered": 0,
            "filtered": 0,
            "unhandled": 0,
            "errors": 0,
        }

    # =========================================================================
    # CONSUMERS
    # =========================================================================

    def add_consumer(self, consumer: EventConsumer) -> bool:
        """Subscribe a consumer. Returns False if it was already subscribed."""
        with self._lock:
            if any(c is consumer for c in self._consumers):
                return False
            self._consumers.append(consumer)
        logger.debug(f"Consumer added: {_name(consumer)}")
        return True

    def remove_consumer(self, consumer: EventConsumer) -> bool:
        """Unsubscribe a consumer. Safe to call for unknown consumers."""
        with self._lock:
            before = len(self._consumers)
            self._consumers = [c for c in self._consumers if c is not consumer]
            removed = len(self._consumers) != before
        if removed:
            logger.debug(f"Consumer removed: {_name(consumer)}")
        return removed

    def has_consumer(self, consumer: EventConsumer) -> bool:
        with self._lock:
            return any(c is consumer for c in self._consumers)

    @property
    def consumer_count(self) -> int:
        with self._lock:
            return len(self._consumers)

    # =========================================================================
    # PRODUCERS
    # =========================================================================

    def add_producer(self, producer: EventProducer) -> asyncio.Task:
        """Run a producer on the current event loop until it ends or is removed."""
        key = id(producer)
        with self._lock:
            task = self._producers.get(key)
            if task and not task.done():
                return task
            task = asyncio.get_running_loop().create_task(self._run_producer(producer))
            self._producers[key] = task
        return task

    def remove_producer(self, producer: EventProducer):
        with self._lock:
            task = self._producers.pop(id(producer), None)
        if task and not task.done():
            task.cancel()

    async def _run_producer(self, producer: EventProducer):
        name = _name(producer)
        logger.info(f"Producer started: {name}")
        try:
            await producer.start_producing(self)
        except asyncio.CancelledError:
            logger.info(f"Producer cancelled: {name}")
            raise
        except Exception as e:
            with self._lock:
                self._stats["errors"] += 1
            logger.error(f"Producer {name} failed: {e}", exc_info=True)
        finally:
            with self._lock:
                task = self._producers.get(id(producer))
                if task is asyncio.current_task():
                    del self._producers[id(producer)]

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue(self, event: Event) -> bool:
        """
        Deliver an event to every interested consumer.

        Returns:
            False if an enqueue filter dropped the event, True otherwise
            (including when no consumer was interested).
        """
        now = self._clock()
        with self._lock:
            self._stats["enqueued"] += 1
            for f in self._filters.values():
                if not f.is_active(now):
                    continue
                try:
                    blocked = f.predicate(event)
                except Exception as e:
                    self._stats["errors"] += 1
                    logger.error(f"Enqueue filter {f.feature_id} raised: {e}")
                    continue
                if blocked:
                    self._stats["filtered"] += 1
                    logger.debug(f"Filtered by [{f.feature_id}]: {event}")
                    return False
            consumers = list(self._consumers)

        delivered = 0
        for consumer in consumers:
            try:
                if not consumer.accepts(event):
                    continue
                consumer.consume(event)
                delivered += 1
            except Exception as e:
                with self._lock:
                    self._stats["errors"] += 1
                logger.error(
                    f"Error in consumer {_name(consumer)} for {event}: {e}",
                    exc_info=True,
                )

        with self._lock:
            self._stats["delivered"] += delivered
            if delivered == 0:
                self._stats["unhandled"] += 1
        return True

    # =========================================================================
    # ENQUEUE FILTERS
    # =========================================================================

    def add_enqueue_filter(self, feature_id: str, predicate: EventPredicate,
                           ttl: float) -> EnqueueFilter:
        """
        Install a filter for feature_id, replacing any existing one.

        Args:
            feature_id: Feature the filter is registered against
            predicate: Returns True for events that must be dropped
            ttl: Lifetime in seconds
        """
        flt = EnqueueFilter(feature_id=feature_id, predicate=predicate,
                            expires_at=self._clock() + ttl)
        with self._lock:
            old = self._filters.pop(feature_id, None)
            if old:
                old.cancel_timer()
            self._filters[feature_id] = flt
            flt._timer = self._schedule_expiry(feature_id, flt, ttl)
        logger.debug(f"Enqueue filter added: {feature_id} ({ttl:.2f}s)")
        return flt

    def remove_enqueue_filter(self, feature_id: str) -> bool:
        """Remove the filter for feature_id. Idempotent."""
        with self._lock:
            flt = self._filters.pop(feature_id, None)
        if flt is None:
            return False
        flt.cancel_timer()
        logger.debug(f"Enqueue filter removed: {feature_id}")
        return True

    def has_enqueue_filter(self, feature_id: str) -> bool:
        with self._lock:
            flt = self._filters.get(feature_id)
            return flt is not None and flt.is_active(self._clock())

    def _schedule_expiry(self, feature_id: str, flt: EnqueueFilter, ttl: float):
        try:
            loop = asyncio.get_running_loop()
            return loop.call_later(ttl, self._expire_filter, feature_id, flt)
        except RuntimeError:
            timer = threading.Timer(ttl, self._expire_filter, args=(feature_id, flt))
            timer.daemon = True
            timer.start()
            return timer

    def _expire_filter(self, feature_id: str, flt: EnqueueFilter):
        # Only evict the filter this timer was created for
        with self._lock:
            if self._filters.get(feature_id) is flt:
                del self._filters[feature_id]
                logger.debug(f"Enqueue filter expired: {feature_id}")
        flt._timer = None

    # =========================================================================
    # LIFECYCLE / STATS
    # =========================================================================

    def close(self):
        """Cancel producers and drop every filter."""
        with self._lock:
            tasks = list(self._producers.values())
            self._producers.clear()
            filters = list(self._filters.values())
            self._filters.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        for flt in filters:
            flt.cancel_timer()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                "consumers": len(self._consumers),
                "producers": len(self._producers),
                "filters": len(self._filters),
            }


def _name(obj) -> str:
    name = getattr(obj, "consumer_name", None) or getattr(obj, "name", None)
    if callable(name):
        name = name()
    return str(name) if name else type(obj).__name__
