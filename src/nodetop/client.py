"""Client side of the node RPC boundary."""

import threading
from collections.abc import Sequence
from multiprocessing import AuthenticationError
from multiprocessing.connection import Client, Connection
from typing import Any

from nodetop.errors import (
    AuthError,
    BadRequestError,
    NodeConnectionError,
    NodeError,
    NodeTimeoutError,
    StaleReferenceError,
)
from nodetop.logger import get_logger
from nodetop.models import PROCESS_FIELDS, ProcessDescriptor, ProcessStatus

logger = get_logger(__name__)


class NodeClient:
    """
    One authenticated connection to a node.

    Calls on a single client are serialised; open several clients to issue
    requests concurrently. The client connects lazily on first call, or
    explicitly via connect() / the context manager.
    """

    def __init__(
        self,
        address: tuple[str, int],
        cookie: bytes,
        timeout: float | None = None,
    ) -> None:
        """
        Initialize the NodeClient.

        Args:
            address: (host, port) of the node.
            cookie: Shared secret the node was started with.
            timeout: Seconds to wait for each reply. None waits forever.
                Connecting and the cookie handshake are not covered; a peer
                that accepts TCP but never answers the handshake blocks
                connect() until the operating system gives up.
        """
        self._address = address
        self._cookie = cookie
        self._timeout = timeout
        self._conn: Connection | None = None
        self._lock = threading.Lock()

    @property
    def address(self) -> tuple[str, int]:
        return self._address

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @property
    def connected(self) -> bool:
        """Check if the client holds an open connection."""
        return self._conn is not None

    def __enter__(self) -> "NodeClient":
        return self.connect()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect(self) -> "NodeClient":
        """Open and authenticate the connection if not already open."""
        with self._lock:
            self._ensure_connection()
        return self

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        with self._lock:
            self._drop_connection()

    def list_processes(self) -> list[str]:
        """Return the identities of all processes live on the node."""
        return [str(identity) for identity in self._call("list_processes")]

    def process_info(
        self,
        identity: str,
        fields: Sequence[str] = PROCESS_FIELDS,
    ) -> ProcessDescriptor:
        """
        Fetch a descriptor for one process.

        Fields not requested keep their zero/unknown defaults.

        Raises:
            StaleReferenceError: The process exited since it was listed.
        """
        info = self._call("process_info", identity, list(fields))
        try:
            status = ProcessStatus(info.get("status", ProcessStatus.UNKNOWN.value))
        except ValueError:
            status = ProcessStatus.UNKNOWN
        return ProcessDescriptor(
            identity=identity,
            reduction_count=int(info.get("reductions", 0)),
            memory_bytes=int(info.get("memory", 0)),
            status=status,
        )

    def memory_stats(self) -> dict[str, int]:
        """Return the node's memory counters, in bytes, by category."""
        return {str(category): int(size) for category, size in self._call("memory_stats").items()}

    def _ensure_connection(self) -> Connection:
        if self._conn is not None:
            return self._conn

        host, port = self._address
        try:
            self._conn = Client(self._address, authkey=self._cookie)
        except AuthenticationError as exc:
            raise AuthError(f"node at {host}:{port} rejected the cookie") from exc
        except (OSError, EOFError) as exc:
            raise NodeConnectionError(f"cannot connect to node at {host}:{port}: {exc}") from exc
        logger.debug("Connected to node", address=f"{host}:{port}")
        return self._conn

    def _drop_connection(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except OSError:
                pass
            self._conn = None

    def _call(self, op: str, *args: Any) -> Any:
        """Send one request and wait for its reply."""
        with self._lock:
            conn = self._ensure_connection()
            try:
                conn.send({"op": op, "args": list(args)})
                ready = self._timeout is None or conn.poll(self._timeout)
                response = conn.recv() if ready else None
            except (OSError, EOFError) as exc:
                self._drop_connection()
                raise NodeConnectionError(f"lost connection to node during {op}: {exc}") from exc

            if not ready:
                # A late reply would be read as the answer to the next call
                self._drop_connection()
                raise NodeTimeoutError(f"{op} timed out after {self._timeout}s")

        if response.get("ok"):
            return response["result"]

        error = response.get("error")
        message = response.get("message", "")
        if error == "stale_reference":
            raise StaleReferenceError(args[0], message)
        if error == "bad_request":
            raise BadRequestError(message)
        raise NodeError(f"{op} failed on node: {message}")
