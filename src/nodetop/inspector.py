"""Remote process inspection: list a node's processes, then describe each one."""

import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

from nodetop.client import NodeClient
from nodetop.errors import StaleReferenceError
from nodetop.logger import get_logger
from nodetop.models import PROCESS_FIELDS, ProcessDescriptor

logger = get_logger(__name__)


class ProcessInspector:
    """
    Two-phase snapshot of a remote node's processes.

    First the full list of identities is fetched, then details are fetched
    for every identity in parallel. A process can exit between the two
    phases; that is an expected race and the process is simply left out.
    Connection and authentication failures abort the whole inspection.
    """

    def __init__(
        self,
        address: tuple[str, int],
        cookie: bytes,
        max_workers: int = 8,
        timeout: float | None = None,
        fields: Sequence[str] = PROCESS_FIELDS,
    ) -> None:
        """
        Initialize the ProcessInspector.

        Args:
            address: (host, port) of the node.
            cookie: Shared secret the node was started with.
            max_workers: Number of parallel detail requests (one connection each).
            timeout: Per-call reply timeout in seconds. None waits forever.
            fields: Process fields to request.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._address = address
        self._cookie = cookie
        self._max_workers = max_workers
        self._timeout = timeout
        self._fields = tuple(fields)

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def _client(self) -> NodeClient:
        return NodeClient(self._address, self._cookie, timeout=self._timeout)

    def inspect(self) -> list[ProcessDescriptor]:
        """
        Return descriptors for every process that is still alive.

        The result keeps the listing order and is never longer than the
        listing. Raises NodeConnectionError or AuthError without returning
        anything if the node cannot be reached or rejects the cookie.
        """
        with self._client() as client:
            identities = client.list_processes()

        if not identities:
            return []

        local = threading.local()
        clients: list[NodeClient] = []
        clients_lock = threading.Lock()

        def describe(identity: str) -> ProcessDescriptor | None:
            client = getattr(local, "client", None)
            if client is None:
                client = local.client = self._client()
                with clients_lock:
                    clients.append(client)
            try:
                return client.process_info(identity, self._fields)
            except StaleReferenceError:
                return None

        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(identities)),
            thread_name_prefix="ProcessInspector",
        )
        try:
            futures = [executor.submit(describe, identity) for identity in identities]
            results = [future.result() for future in futures]
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
            for client in clients:
                client.close()

        descriptors = [descriptor for descriptor in results if descriptor is not None]
        dropped = len(identities) - len(descriptors)
        if dropped:
            logger.debug("Skipped processes that exited mid-inspection", dropped=dropped)
        return descriptors
