"""
Command Processor - Non-Blocking Command Queue
==============================================
Actions hand CommandGroups to the processor and return immediately. A
background worker turns every abstract command into its hardware form via
the owning extension's builder and transmits it.

This module provides:
- Non-blocking enqueue (bounded queue, oldest group dropped on overflow)
- Ordered transmission of the commands inside one group
- Transmission retries through the shared error handler
- Replay-then-suppress of reporting echo after a command is sent
"""
import asyncio
import logging
import threading
import time
from collections import deque
from typing import Any, Dict, Mapping, Optional

from commands import CommandGroup
from error_handler import ErrorHandler, TransmitError, get_error_handler
from events import COMMAND_FAILED, FeatureReportingEvent, GenericEvent

logger = logging.getLogger("command_queue")


class CommandError(Exception):
    """Raised when a command group is rejected at submission."""
    pass


class CommandProcessor:
    """
    Background transmitter for command groups.

    Guarantees:
    1. enqueue() never blocks the caller (trigger delivery path)
    2. commands of one group are transmitted in submission order
    3. a failure aborts the rest of its group and is reported on the broker
    """

    def __init__(self, system, max_queue_size: int = 1000, max_retries: int = 2,
                 transmit_timeout: float = 10.0, backoff_base: float = 0.5,
                 error_handler: Optional[ErrorHandler] = None):
        """
        Args:
            system: Owning system (broker, extensions, device lookup)
            max_queue_size: Maximum queued groups (older dropped if exceeded)
            max_retries: Retries for a transient transmit failure
            transmit_timeout: Timeout per transmit attempt (seconds)
            backoff_base: Base delay between transmit retries (seconds)
        """
        self.system = system
        self.max_size = max_queue_size
        self.max_retries = max_retries
        self.transmit_timeout = transmit_timeout
        self.backoff_base = backoff_base
        self.error_handler = error_handler or get_error_handler()

        self._queue = deque(maxlen=max_queue_size)
        self._queue_lock = threading.Lock()
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._worker_task: Optional[asyncio.Task] = None
        self._running = False

        self._stats = {
            'groups_enqueued': 0,
            'groups_completed': 0,
            'groups_failed': 0,
            'commands_sent': 0,
            'commands_failed': 0,
            'dropped': 0,
            'suppressions': 0,
        }

        logger.info(f"Command processor initialized: max_size={max_queue_size}, "
                    f"max_retries={max_retries}")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        """Start the background transmit worker."""
        if self._running:
            logger.warning("Command processor already running")
            return

        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._running = True
        if self._queue:
            self._wakeup.set()
        self._worker_task = asyncio.create_task(self._worker())
        logger.info("Command processor worker started")

    async def stop(self):
        """Stop the worker and flush the remaining groups."""
        if not self._running:
            return

        logger.info("Stopping command processor...")
        self._running = False

        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        remaining = len(self._queue)
        if remaining > 0:
            logger.info(f"Flushing {remaining} remaining command groups...")
            await self.flush()

        logger.info(f"Command processor stopped. Stats: {self._stats}")

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def enqueue(self, group: CommandGroup) -> bool:
        """
        Queue a command group for transmission (non-blocking).

        If the queue is full the oldest group is dropped.

        Raises:
            CommandError: the group is not a CommandGroup or has no commands
        """
        if not isinstance(group, CommandGroup):
            raise CommandError(f"Expected CommandGroup, got {type(group).__name__}")
        if not group.cmds:
            raise CommandError(f"Command group '{group.desc}' has no commands")

        with self._queue_lock:
            was_full = len(self._queue) >= self.max_size
            self._queue.append(group)
            self._stats['groups_enqueued'] += 1
            if was_full:
                self._stats['dropped'] += 1

        if was_full:
            logger.warning(f"Command queue full, dropped oldest group "
                           f"(total dropped: {self._stats['dropped']})")
        logger.debug(f"Queued {group}")
        self._wake()
        return True

    def _wake(self):
        if self._wakeup is None or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wakeup.set()
        else:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    def _pop(self) -> Optional[CommandGroup]:
        with self._queue_lock:
            return self._queue.popleft() if self._queue else None

    # =========================================================================
    # WORKER
    # =========================================================================

    async def _worker(self):
        logger.info("Command worker started")
        while self._running:
            try:
                group = self._pop()
                if group is None:
                    self._wakeup.clear()
                    await self._wakeup.wait()
                    continue
                await self.process_group(group)
            except asyncio.CancelledError:
                logger.info("Command worker cancelled")
                break
            except Exception as e:
                logger.error(f"Command worker error: {e}", exc_info=True)
                await asyncio.sleep(1)
        logger.info("Command worker stopped")

    async def flush(self):
        """Transmit every queued group now."""
        while True:
            group = self._pop()
            if group is None:
                return
            await self.process_group(group)

    async def process_group(self, group: CommandGroup) -> bool:
        """
        Transmit the commands of a group in order.

        Returns:
            True if every command was sent
        """
        started = time.time()
        for index, cmd in enumerate(group.cmds):
            try:
                await self._send(cmd)
                self._stats['commands_sent'] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats['commands_failed'] += 1
                self._stats['groups_failed'] += 1
                skipped = len(group.cmds) - index - 1
                logger.error(f"{group}: command '{cmd}' failed: {e}"
                             + (f" ({skipped} remaining skipped)" if skipped else ""))
                self._report_failure(group, cmd, e)
                return False

        self._stats['groups_completed'] += 1
        logger.debug(f"{group} sent in {(time.time() - started) * 1000:.1f}ms")
        return True

    async def _send(self, cmd):
        device = self.system.transport_device(cmd.device_id)
        if device is None:
            raise TransmitError(f"No device for command '{cmd}' (device_id={cmd.device_id})")

        builder = self.system.extensions.find_cmd_builder(self.system, device)
        if builder is None:
            raise TransmitError(f"No command builder for device {device.name} ({device.model_number})")

        hw = builder.build(cmd)
        if hw.report is not None:
            self.suppress_feature_reporting(hw.report.feature_id, hw.report.attrs, hw.report.delay)

        await self.error_handler.retry_operation(
            hw.transmit,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            timeout=self.transmit_timeout,
            context=f"{device.name}: {hw}",
        )
        logger.info(f"[{device.name}] Sent: {hw}")

    def _report_failure(self, group: CommandGroup, cmd, error: Exception):
        self.system.broker.enqueue(GenericEvent(
            name=COMMAND_FAILED,
            payload={
                "group_id": group.id,
                "group": group.desc,
                "command": str(cmd),
                "device_id": cmd.device_id,
                "error": str(error),
            },
        ))

    # =========================================================================
    # REPORTING SUPPRESSION
    # =========================================================================

    def suppress_feature_reporting(self, feature_id: str, attrs: Mapping[str, Any],
                                   delay: float):
        """
        Publish the values a command sets, then hide reporting echo.

        Hardware often reports intermediate values while it ramps towards a
        new level. The final values are replayed immediately and further
        reports for the feature are dropped until delay elapses.
        """
        broker = self.system.broker
        broker.remove_enqueue_filter(feature_id)
        broker.enqueue(FeatureReportingEvent(feature_id=feature_id, attrs=attrs))
        broker.add_enqueue_filter(
            feature_id,
            lambda evt: isinstance(evt, FeatureReportingEvent) and evt.feature_id == feature_id,
            delay,
        )
        self._stats['suppressions'] += 1

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'queue_size': len(self._queue),
            'queue_max': self.max_size,
            'running': self._running,
        }
