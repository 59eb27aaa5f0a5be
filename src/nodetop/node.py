"""Node server: exposes this machine's processes to authenticated clients."""

import argparse
import threading
from collections.abc import Sequence
from multiprocessing import AuthenticationError
from multiprocessing.connection import Client, Connection, Listener
from typing import Any

import psutil

from nodetop.config import DEFAULT_HOST, DEFAULT_NODE_NAME, Settings, ensure_cookie, parse_address
from nodetop.errors import BadRequestError, StaleReferenceError
from nodetop.logger import get_logger
from nodetop.models import PROCESS_FIELDS, ProcessStatus

logger = get_logger(__name__)

# psutil attribute backing each wire field
_PSUTIL_ATTRS = {
    "reductions": "cpu_times",
    "memory": "memory_info",
    "status": "status",
}


def _parse_identity(identity: str) -> int:
    try:
        pid = int(identity)
    except (TypeError, ValueError):
        raise BadRequestError(f"malformed process identity {identity!r}") from None
    if pid < 0:
        raise BadRequestError(f"malformed process identity {identity!r}")
    return pid


class LocalRuntime:
    """
    The node's view of the machine it runs on, backed by psutil.

    Every method returns plain data (lists, dicts, ints, strings) so results
    can cross the wire unchanged.
    """

    def list_processes(self) -> list[str]:
        """Return the identities of all live processes."""
        return [str(pid) for pid in psutil.pids()]

    def process_info(self, identity: str, fields: Sequence[str] = PROCESS_FIELDS) -> dict[str, Any]:
        """
        Return the requested fields for one process.

        Raises StaleReferenceError if the process is gone. Fields that cannot
        be read (AccessDenied, zombies) come back as safe defaults.
        """
        unknown = [field for field in fields if field not in _PSUTIL_ATTRS]
        if unknown:
            raise BadRequestError(f"unknown process fields: {', '.join(map(str, unknown))}")
        pid = _parse_identity(identity)

        try:
            proc = psutil.Process(pid)
            info = proc.as_dict(attrs=[_PSUTIL_ATTRS[field] for field in fields], ad_value=None)
        except psutil.NoSuchProcess:
            raise StaleReferenceError(identity) from None

        result: dict[str, Any] = {}
        if "reductions" in fields:
            cpu_times = info.get("cpu_times")
            result["reductions"] = int((cpu_times.user + cpu_times.system) * 1000) if cpu_times else 0
        if "memory" in fields:
            mem_info = info.get("memory_info")
            result["memory"] = mem_info.rss if mem_info else 0
        if "status" in fields:
            result["status"] = ProcessStatus.from_psutil(info.get("status")).value
        return result

    def memory_stats(self) -> dict[str, int]:
        """Return aggregate memory counters in bytes."""
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return {
            "total": mem.total,
            "used": mem.used,
            "available": mem.available,
            "swap": swap.used,
            "node": psutil.Process().memory_info().rss,
        }


def _failure(error: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": error, "message": message}


class NodeServer:
    """
    Serves a runtime over multiprocessing.connection.

    The cookie is the connection authkey, so clients without the shared
    secret fail the HMAC handshake. Accepting runs on one daemon thread and
    every authenticated connection gets its own daemon thread.
    """

    POLL_INTERVAL = 0.2

    def __init__(
        self,
        cookie: bytes,
        address: tuple[str, int] = (DEFAULT_HOST, 0),
        runtime: LocalRuntime | None = None,
        name: str = DEFAULT_NODE_NAME,
    ) -> None:
        """
        Initialize the NodeServer.

        Args:
            cookie: Shared secret clients must present.
            address: (host, port) to bind. Port 0 picks a free port.
            runtime: Backend answering requests. Defaults to LocalRuntime.
            name: Node name used in log events.
        """
        self._cookie = cookie
        self._requested_address = address
        self._runtime = runtime or LocalRuntime()
        self._name = name
        self._listener: Listener | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._handlers: set[threading.Thread] = set()
        self._handlers_lock = threading.Lock()
        self._operations = {
            "list_processes": self._runtime.list_processes,
            "process_info": self._runtime.process_info,
            "memory_stats": self._runtime.memory_stats,
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def address(self) -> tuple[str, int]:
        """The bound address once started, otherwise the requested one."""
        if self._listener is not None:
            return self._listener.address
        return self._requested_address

    @property
    def is_running(self) -> bool:
        """Check if the accept thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Bind the listener and start accepting connections."""
        if self.is_running:
            return

        self._stop_event = threading.Event()
        self._listener = Listener(self._requested_address, authkey=self._cookie)
        self._thread = threading.Thread(
            target=self._accept_loop,
            args=(self._listener, self._stop_event),
            daemon=True,
            name="NodeServer",
        )
        self._thread.start()
        host, port = self.address
        logger.info("Node listening", node=self._name, address=f"{host}:{port}")

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop accepting and shut down open connections.

        Args:
            timeout: How long to wait for each thread to stop (seconds).
        """
        if self._listener is None:
            return

        self._stop_event.set()
        # accept() does not notice a closed socket, so knock once to wake it up
        try:
            Client(self.address, authkey=self._cookie).close()
        except (OSError, EOFError, AuthenticationError):
            pass
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._listener.close()
        self._listener = None

        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler.join(timeout=timeout)
        logger.info("Node stopped", node=self._name)

    def serve_forever(self) -> None:
        """Start the server and block until interrupted."""
        self.start()
        try:
            while self.is_running:
                self._stop_event.wait(timeout=0.5)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _accept_loop(self, listener: Listener, stop_event: threading.Event) -> None:
        """Accept connections until stop is requested."""
        while not stop_event.is_set():
            try:
                conn = listener.accept()
            except AuthenticationError as exc:
                logger.warning("Rejected connection with wrong cookie", node=self._name, error=str(exc))
                continue
            except (EOFError, ConnectionError) as exc:
                logger.debug("Handshake aborted by peer", node=self._name, error=str(exc))
                continue
            except OSError:
                if not stop_event.is_set():
                    logger.exception("Listener failed", node=self._name)
                break

            if stop_event.is_set():
                conn.close()
                break

            handler = threading.Thread(
                target=self._serve_connection,
                args=(conn, stop_event),
                daemon=True,
                name="NodeServerConnection",
            )
            with self._handlers_lock:
                self._handlers.add(handler)
            handler.start()

    def _serve_connection(self, conn: Connection, stop_event: threading.Event) -> None:
        """Answer requests on one connection until the peer hangs up."""
        try:
            with conn:
                while not stop_event.is_set():
                    try:
                        if not conn.poll(self.POLL_INTERVAL):
                            continue
                        request = conn.recv()
                    except (EOFError, OSError):
                        break

                    response = self._dispatch(request)

                    try:
                        conn.send(response)
                    except OSError:
                        # Peer gave up waiting (timeout) or went away
                        break
        finally:
            with self._handlers_lock:
                self._handlers.discard(threading.current_thread())

    def _dispatch(self, request: Any) -> dict[str, Any]:
        """Run one request against the runtime and build the reply."""
        try:
            op = request["op"]
            args = tuple(request.get("args", ()))
        except (TypeError, KeyError, AttributeError):
            return _failure("bad_request", "malformed request")

        operation = self._operations.get(op)
        if operation is None:
            return _failure("bad_request", f"unknown operation {op!r}")

        try:
            result = operation(*args)
        except StaleReferenceError as exc:
            return _failure("stale_reference", str(exc))
        except (BadRequestError, TypeError) as exc:
            return _failure("bad_request", str(exc))
        except Exception as exc:
            logger.exception("Operation failed", node=self._name, op=op)
            return _failure("internal", str(exc))

        return {"ok": True, "result": result}


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for the nodetop-node server."""
    parser = argparse.ArgumentParser(
        prog="nodetop-node",
        description="Serve this machine's processes to nodetop clients.",
    )
    parser.add_argument("--address", help="host:port to listen on (default: NODETOP_ADDRESS)")
    parser.add_argument("--name", help="node name used in logs (default: NODETOP_NODE_NAME)")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env()
        address = parse_address(args.address) if args.address else settings.address
    except ValueError as exc:
        parser.error(str(exc))
    cookie = settings.cookie or ensure_cookie()

    server = NodeServer(cookie, address=address, name=args.name or settings.node_name)
    server.serve_forever()


if __name__ == "__main__":
    main()
