import logging
import threading

from collections import defaultdict
from queue import Empty, Queue
from typing import Callable

from wrowlog.rows.row_signals import RowSignal, ShutdownRequested

logger = logging.getLogger(__name__)

'''
All state changes in wrowlog happen on one thread: the one running Dispatcher.run().

The serial capture thread, the periodic timers, the BLE scanner and the signal handler
only ever post signals onto the dispatcher's queue. The run loop takes them off one at
a time and calls the handlers registered for that signal type, so handlers never run
concurrently with each other and need no locking between them.

Tests drive components by calling their handlers (or Dispatcher.dispatch) directly with
synthetic signals.
'''

QUEUE_POLL_TIMEOUT = 0.5    # Seconds run() waits on an empty queue before re-checking the stop flag

Handler = Callable[[RowSignal], None]


class PeriodicTimer(threading.Thread):
    """Posts a freshly built signal onto the dispatcher every `interval` seconds until cancelled."""

    def __init__(self, dispatcher: "Dispatcher", interval: float, signal_factory: Callable[[], RowSignal], name: str):
        super().__init__(name=name, daemon=True)
        self._dispatcher = dispatcher
        self.interval = interval
        self._signal_factory = signal_factory
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self._dispatcher.post(self._signal_factory())

    def cancel(self) -> None:
        if self._stop_event.is_set():
            return
        logger.debug(f"Cancelling timer {self.name}")
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self.interval + 1)

    @property
    def active(self) -> bool:
        return not self._stop_event.is_set()


class Dispatcher:

    def __init__(self):
        self._queue: Queue[RowSignal] = Queue()
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._timers: list[PeriodicTimer] = []
        self._stopped = threading.Event()

    def register(self, signal_type: type, handler: Handler) -> None:
        self._handlers[signal_type].append(handler)

    def post(self, signal: RowSignal) -> None:
        self._queue.put(signal)

    def dispatch(self, signal: RowSignal) -> None:
        handlers = self._handlers.get(type(signal))
        if not handlers:
            logger.debug(f"No handler registered for {type(signal).__name__}")
            return
        for handler in handlers:
            try:
                handler(signal)
            except Exception:
                logger.exception(f"Handler {handler} failed on {signal}")

    def schedule(self, interval: float, signal_factory: Callable[[], RowSignal], name: str) -> PeriodicTimer:
        timer = PeriodicTimer(self, interval, signal_factory, name)
        self._timers = [t for t in self._timers if t.active]
        self._timers.append(timer)
        timer.start()
        logger.debug(f"Started timer {name} firing every {interval}s")
        return timer

    def run(self) -> None:
        logger.debug("Dispatcher loop starting")
        while not self._stopped.is_set():
            try:
                signal = self._queue.get(timeout=QUEUE_POLL_TIMEOUT)
            except Empty:
                continue
            self.dispatch(signal)
            if isinstance(signal, ShutdownRequested):
                logger.info(f"Shutdown requested ({signal.reason})")
                self._stopped.set()
        logger.debug("Dispatcher loop finished")

    def stop(self, reason: str = "requested") -> None:
        self.post(ShutdownRequested(reason=reason))

    def cancel_timers(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()
