"""Periodic memory sampling of a remote node."""

import threading
from collections import deque
from collections.abc import Callable

from nodetop.client import NodeClient
from nodetop.errors import BadRequestError, NodeError
from nodetop.logger import get_logger
from nodetop.models import MemorySample

logger = get_logger(__name__)

MIN_INTERVAL = 0.05


class SampleWindow:
    """Thread-safe sliding window holding the most recent samples."""

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("window size must be at least 1")
        self._samples: deque[MemorySample] = deque(maxlen=size)
        self._lock = threading.Lock()

    @classmethod
    def for_duration(cls, window: float, interval: float) -> "SampleWindow":
        """Size a window to cover `window` seconds of samples taken every `interval` seconds."""
        if window <= 0 or interval <= 0:
            raise ValueError("window and interval must be positive")
        # Tolerance keeps 1.0 / 0.2 from flooring to 4
        return cls(max(1, int(window / interval + 1e-9)))

    @property
    def size(self) -> int:
        return self._samples.maxlen or 0

    @property
    def latest(self) -> MemorySample | None:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def append(self, sample: MemorySample) -> None:
        with self._lock:
            self._samples.append(sample)

    __call__ = append

    def samples(self) -> list[MemorySample]:
        """Return the held samples, oldest first."""
        with self._lock:
            return list(self._samples)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)


class MemorySampler:
    """
    Polls a node's memory counters on a fixed interval.

    Runs in a separate daemon thread. Each tick makes one round trip and only
    then waits for the interval, so requests never overlap. Samples are
    numbered from 0 without gaps and handed to the consumer, which can be a
    SampleWindow or any callable such as Queue.put.
    """

    def __init__(
        self,
        client: NodeClient,
        consumer: Callable[[MemorySample], object],
        interval: float = 1.0,
        category: str = "total",
    ) -> None:
        """
        Initialize the MemorySampler.

        Args:
            client: Connection to the node to sample.
            consumer: Called with every emitted sample.
            interval: Delay between the end of one tick and the next (seconds).
            category: Memory category to sample, e.g. "total" or "node".
        """
        self._client = client
        self._consumer = consumer
        self._interval = max(MIN_INTERVAL, interval)
        self._category = category
        self._next_index = 0
        self._last_error: NodeError | None = None
        self._stop_event = threading.Event()
        # Serialises emitting a sample against cancellation
        self._emit_lock = threading.RLock()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> float:
        """Get the current sampling interval."""
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        """Set the sampling interval."""
        self._interval = max(MIN_INTERVAL, value)

    @property
    def category(self) -> str:
        return self._category

    @property
    def samples_emitted(self) -> int:
        """Number of samples handed to the consumer so far."""
        return self._next_index

    @property
    def last_error(self) -> NodeError | None:
        """The error that ended the sampling loop, if any."""
        return self._last_error

    @property
    def is_running(self) -> bool:
        """Check if the sampler thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the sampling thread."""
        if self.is_running:
            return

        # Each run owns its stop event; a previous run still finishing a
        # round trip keeps seeing its own cancellation.
        self._stop_event = threading.Event()
        self._last_error = None
        self._thread = threading.Thread(
            target=self._poll_loop,
            args=(self._stop_event,),
            daemon=True,
            name="MemorySampler",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the sampling thread.

        A round trip already in flight is allowed to finish but its reading
        is discarded, even if the join times out first.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        with self._emit_lock:
            self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self, stop_event: threading.Event) -> None:
        """Main sampling loop running in the background thread."""
        while not stop_event.is_set():
            try:
                reading = self._read()
            except NodeError as exc:
                if stop_event.is_set():
                    break
                self._last_error = exc
                logger.error(
                    "Memory sampling stopped",
                    category=self._category,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                break

            with self._emit_lock:
                if stop_event.is_set():
                    break
                sample = MemorySample(
                    category=self._category,
                    bytes=reading,
                    sequence_index=self._next_index,
                )
                self._next_index += 1
                try:
                    self._consumer(sample)
                except Exception:
                    logger.exception("Sample consumer failed", sequence_index=sample.sequence_index)

            # Wait for the interval or until stop is requested
            stop_event.wait(timeout=self._interval)

    def _read(self) -> int:
        """Fetch the configured category from the node."""
        stats = self._client.memory_stats()
        try:
            return stats[self._category]
        except KeyError:
            raise BadRequestError(f"node reports no memory category {self._category!r}") from None
