"""
PowGate Continuous Trust Monitor (client side)

Capture callbacks never await: they hand samples to bounded queues and return.
Background tasks batch the samples and post them to the gateway. Sends are
fire-and-forget; a failed send is logged and the batch is dropped.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, List, Optional, Set

from models import ActivityKind, MAX_BATCH_SAMPLES, Sample, TelemetryBatch

log = logging.getLogger(__name__)

Sender = Callable[[TelemetryBatch], Awaitable[None]]


class TelemetryMonitor:
    def __init__(self, send: Sender, is_mobile: bool = False,
                 mouse_flush_size: int = 20, mouse_idle_seconds: float = 2.0,
                 heartbeat_seconds: float = 5.0, motion_ring_size: int = MAX_BATCH_SAMPLES,
                 queue_size: int = 1000, clock: Callable[[], float] = time.monotonic):
        self._send = send
        self.is_mobile = is_mobile
        self.mouse_flush_size = mouse_flush_size
        self.mouse_idle_seconds = mouse_idle_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self._clock = clock

        self._mouse: "asyncio.Queue[Sample]" = asyncio.Queue(maxsize=queue_size)
        self._mouse_buffer: List[Sample] = []
        self._scroll: "asyncio.Queue[Sample]" = asyncio.Queue(maxsize=1)
        self._scroll_listening = True
        self._motion = deque(maxlen=motion_ring_size)

        self._tasks: List[asyncio.Task] = []
        self._inflight: Set[asyncio.Task] = set()
        self.running = False
        self.dropped = 0
        self.failed_sends = 0

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def _offer(self, queue: asyncio.Queue, sample: Sample) -> None:
        try:
            queue.put_nowait(sample)
        except asyncio.QueueFull:
            self.dropped += 1
            log.debug("Telemetry queue full, sample dropped")

    def record_mouse(self, x: float, y: float, t: Optional[float] = None) -> None:
        self._offer(self._mouse, Sample(x=x, y=y, t=self._clock() if t is None else t))

    def record_scroll(self, y: float, t: Optional[float] = None) -> None:
        if not self._scroll_listening:
            return
        # one-shot listener
        self._scroll_listening = False
        self._offer(self._scroll, Sample(y=y, t=self._clock() if t is None else t))

    def record_motion(self, x: float, y: float, z: float, t: Optional[float] = None) -> None:
        if not self.is_mobile:
            return
        self._motion.append(Sample(x=x, y=y, z=z, t=self._clock() if t is None else t))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _dispatch(self, activity: ActivityKind, samples: List[Sample]) -> None:
        batch = TelemetryBatch(activity=activity, samples=samples)
        task = asyncio.create_task(self._send_quietly(batch))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _send_quietly(self, batch: TelemetryBatch) -> None:
        try:
            await self._send(batch)
        except Exception as e:
            self.failed_sends += 1
            log.debug("Dropped %s batch of %d samples: %r", batch.activity.value, len(batch.samples), e)

    def _flush_mouse(self) -> None:
        while self._mouse_buffer:
            chunk = self._mouse_buffer[:self.mouse_flush_size]
            del self._mouse_buffer[:self.mouse_flush_size]
            self._dispatch(ActivityKind.MOUSEMOVE, chunk)

    def _flush_motion(self) -> None:
        if self._motion:
            samples = list(self._motion)
            self._motion.clear()
            self._dispatch(ActivityKind.DEVICEMOTION, samples)

    # -------------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------------

    async def _mouse_loop(self) -> None:
        while True:
            timeout = self.mouse_idle_seconds if self._mouse_buffer else None
            try:
                sample = await asyncio.wait_for(self._mouse.get(), timeout)
            except asyncio.TimeoutError:
                self._flush_mouse()
                continue
            self._mouse_buffer.append(sample)
            if len(self._mouse_buffer) >= self.mouse_flush_size:
                self._flush_mouse()

    async def _scroll_loop(self) -> None:
        sample = await self._scroll.get()
        self._dispatch(ActivityKind.SCROLL, [sample])

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            self.beat()

    def beat(self) -> None:
        self._dispatch(ActivityKind.HEARTBEAT, [])
        self._flush_motion()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._tasks = [
            asyncio.create_task(self._mouse_loop()),
            asyncio.create_task(self._scroll_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]

    async def stop(self) -> None:
        """Cancel the loops, flush what was captured and wait for in-flight sends."""
        self.running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        while not self._mouse.empty():
            self._mouse_buffer.append(self._mouse.get_nowait())
        self._flush_mouse()
        if not self._scroll.empty():
            self._dispatch(ActivityKind.SCROLL, [self._scroll.get_nowait()])
        self._flush_motion()

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
