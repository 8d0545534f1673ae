"""
simulation.py - Discrete-Event Simulation Core (M0)

DESIGN PHILOSOPHY:
- Single driver thread runs the event loop; everything that touches the
  event queue happens on it
- Simulated time in integer microseconds, jumps from event to event
- Other threads (the test script) post work with invoke_simulation_thread()
- No radio model, no mote firmware: motes are plain Python objects that
  emit log lines

The loop:
1. Drain pending invoke_simulation_thread() requests
2. Stop if stop_simulation() was requested
3. Pop the earliest scheduled event, advance the clock to it, execute it
4. Repeat until the queue is empty or the duration is reached
"""

import heapq
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

MICROSECOND = 1
MILLISECOND = 1000 * MICROSECOND
SECOND = 1000 * MILLISECOND


@dataclass
class LogOutputEvent:
    """One line of log output from a mote."""
    time_us: int
    mote: Any
    msg: str


LogOutputListener = Callable[[LogOutputEvent], None]


class TimeEvent:
    """
    Callback scheduled at an absolute simulation time.

    remove() cancels a pending event; the queue drops it lazily.
    """

    def __init__(self, callback: Callable[[int], None], name: str = ""):
        self.callback = callback
        self.name = name
        self.scheduled = False
        self._ticket = -1

    def execute(self, time_us: int):
        self.callback(time_us)

    def remove(self):
        self.scheduled = False

    def __repr__(self) -> str:
        return f"TimeEvent({self.name or self.callback!r}, scheduled={self.scheduled})"


class EventQueue:
    """
    Min-heap of (time_us, ticket, event).

    Tickets increase monotonically, so events scheduled for the same time
    run in insertion order.
    """

    def __init__(self):
        self._heap: List[Tuple[int, int, TimeEvent]] = []
        self._count = 0

    def add_event(self, event: TimeEvent, time_us: int):
        if event.scheduled:
            raise ValueError(f"Event is already scheduled: {event}")
        event._ticket = self._count
        event.scheduled = True
        heapq.heappush(self._heap, (time_us, self._count, event))
        self._count += 1

    def peek_time(self) -> Optional[int]:
        """Time of the next live event, or None if nothing is scheduled."""
        self._drop_removed()
        return self._heap[0][0] if self._heap else None

    def pop_first(self) -> Optional[Tuple[int, TimeEvent]]:
        self._drop_removed()
        if not self._heap:
            return None
        time_us, _, event = heapq.heappop(self._heap)
        event.scheduled = False
        return time_us, event

    def clear(self):
        for _, _, event in self._heap:
            event.scheduled = False
        self._heap = []

    def is_empty(self) -> bool:
        return self.peek_time() is None

    def _drop_removed(self):
        # Entries whose event was removed or rescheduled since they were pushed
        while self._heap:
            _, ticket, event = self._heap[0]
            if event.scheduled and event._ticket == ticket:
                return
            heapq.heappop(self._heap)

    def __len__(self) -> int:
        return sum(1 for _, ticket, e in self._heap if e.scheduled and e._ticket == ticket)


class Simulation:
    """
    Minimal discrete-event simulation hosting motes and a test script.

    Only the driver thread (the one inside run()) may schedule events while
    the simulation is running; other threads use invoke_simulation_thread().
    """

    def __init__(self, seed: int = 42):
        self.seed = seed
        self.current_time_us = 0
        self.motes: Dict[int, Any] = {}
        self.event_queue = EventQueue()
        self.log_output_listeners: List[LogOutputListener] = []
        self.exit_code: Optional[int] = None
        self.is_running = False
        self.event_count = 0

        self._stop_requested = False
        self._poll_requests: Deque[Callable[[], None]] = deque()
        self._poll_lock = threading.Lock()

    def add_mote(self, mote):
        """Register a mote (anything with a mote_id attribute)."""
        if mote.mote_id in self.motes:
            raise ValueError(f"Duplicate mote id: {mote.mote_id}")
        self.motes[mote.mote_id] = mote

    def get_mote(self, mote_id: int):
        return self.motes.get(mote_id)

    def schedule_event(self, event: TimeEvent, time_us: int):
        """Schedule event at absolute simulation time time_us."""
        if time_us < self.current_time_us:
            raise ValueError(
                f"Cannot schedule {event} in the past: "
                f"{time_us}us < {self.current_time_us}us"
            )
        self.event_queue.add_event(event, time_us)

    def invoke_simulation_thread(self, request: Callable[[], None]):
        """Run request on the driver thread before the next event (thread-safe)."""
        with self._poll_lock:
            self._poll_requests.append(request)

    def add_log_output_listener(self, listener: LogOutputListener):
        self.log_output_listeners.append(listener)

    def remove_log_output_listener(self, listener: LogOutputListener):
        if listener in self.log_output_listeners:
            self.log_output_listeners.remove(listener)

    def log_output(self, mote, msg: str):
        """Deliver one log line from mote to all listeners, at the current time."""
        event = LogOutputEvent(time_us=self.current_time_us, mote=mote, msg=msg)
        for listener in list(self.log_output_listeners):
            listener(event)

    def stop_simulation(self, exit_code: Optional[int] = None):
        """Ask the loop to stop before the next event."""
        if exit_code is not None:
            self.exit_code = exit_code
        self._stop_requested = True

    def run(self, duration_us: Optional[int] = None) -> Optional[int]:
        """
        Run until stopped, out of events, or duration_us is reached.

        Args:
            duration_us: Optional simulated-time limit in microseconds

        Returns:
            Exit code passed to stop_simulation(), or None
        """
        limit = f"{duration_us / 1e6:.1f}s" if duration_us is not None else "no limit"
        print(f"[Simulation] Starting at t={self.current_time_us / 1e6:.3f}s ({limit})")

        start_wall_time = time.time()
        start_time_us = self.current_time_us
        start_count = self.event_count
        self.is_running = True
        self._stop_requested = False

        try:
            while True:
                self._process_poll_requests()
                if self._stop_requested:
                    break

                next_time_us = self.event_queue.peek_time()
                if next_time_us is None:
                    break
                if duration_us is not None and next_time_us > duration_us:
                    self.current_time_us = duration_us
                    break

                time_us, event = self.event_queue.pop_first()
                self.current_time_us = time_us
                event.execute(time_us)
                self.event_count += 1
        finally:
            self.is_running = False

        elapsed = time.time() - start_wall_time
        simulated_s = (self.current_time_us - start_time_us) / 1e6
        print(f"[Simulation] Stopped at t={self.current_time_us / 1e6:.3f}s")
        print(f"  Events: {self.event_count - start_count}")
        print(f"  Wall time: {elapsed:.2f}s")
        if elapsed > 0:
            print(f"  Speedup: {simulated_s / elapsed:.1f}x")

        return self.exit_code

    def _process_poll_requests(self):
        while True:
            with self._poll_lock:
                if not self._poll_requests:
                    return
                request = self._poll_requests.popleft()
            request()
