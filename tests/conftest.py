"""Shared pytest fixtures: loopback nodes and cookies."""

import multiprocessing
import secrets
import socket
import time
from collections.abc import Sequence
from typing import Any

import pytest

from nodetop.errors import StaleReferenceError
from nodetop.models import PROCESS_FIELDS
from nodetop.node import LocalRuntime, NodeServer


def dummy_worker(duration: float = 60.0) -> None:
    """A dummy worker process that sleeps for a given duration."""
    try:
        time.sleep(duration)
    except (KeyboardInterrupt, SystemExit):
        pass


class FakeRuntime(LocalRuntime):
    """
    Deterministic runtime for tests.

    Lists the given identities; those in `stale` exit before they can be
    described. Identity "N" reports N milliseconds of CPU and N KiB of memory.
    """

    def __init__(
        self,
        identities: Sequence[str] = ("1", "2", "3"),
        stale: Sequence[str] = (),
        memory: dict[str, int] | None = None,
    ) -> None:
        self.identities = list(identities)
        self.stale = set(stale)
        self.memory = memory if memory is not None else {"total": 4096, "node": 1024}

    def list_processes(self) -> list[str]:
        return list(self.identities)

    def process_info(self, identity: str, fields: Sequence[str] = PROCESS_FIELDS) -> dict[str, Any]:
        if identity in self.stale or identity not in self.identities:
            raise StaleReferenceError(identity)
        info = {"reductions": int(identity), "memory": int(identity) * 1024, "status": "running"}
        return {field: info[field] for field in fields if field in info}

    def memory_stats(self) -> dict[str, int]:
        return dict(self.memory)


@pytest.fixture
def cookie() -> bytes:
    """A fresh shared secret per test."""
    return secrets.token_hex(16).encode()


@pytest.fixture
def make_node(cookie):
    """Factory starting loopback nodes that are stopped after the test."""
    servers: list[NodeServer] = []

    def factory(runtime: LocalRuntime | None = None) -> NodeServer:
        server = NodeServer(cookie, address=("127.0.0.1", 0), runtime=runtime)
        server.start()
        servers.append(server)
        return server

    yield factory

    for server in servers:
        server.stop()


@pytest.fixture
def node_server(make_node) -> NodeServer:
    """A node serving this machine's real processes."""
    return make_node()


@pytest.fixture
def unused_address() -> tuple[str, int]:
    """An address nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()


@pytest.fixture
def dead_pid() -> int:
    """Pid of a child process that has already exited and been reaped."""
    p = multiprocessing.Process(target=dummy_worker, args=(60.0,))
    p.start()
    p.terminate()
    p.join(timeout=5.0)
    return p.pid
