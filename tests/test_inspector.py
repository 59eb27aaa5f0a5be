"""Tests for ProcessInspector."""

import os
import threading

import pytest
from conftest import FakeRuntime

from nodetop.errors import AuthError, BadRequestError, NodeConnectionError
from nodetop.inspector import ProcessInspector
from nodetop.models import ProcessDescriptor, ProcessStatus
from nodetop.node import LocalRuntime


class ListingRuntime(LocalRuntime):
    """Real runtime with a fixed process listing."""

    def __init__(self, identities):
        self.identities = identities

    def list_processes(self):
        return list(self.identities)


class ConcurrencyRuntime(FakeRuntime):
    """Records how many process_info calls are in flight at once."""

    def __init__(self, identities):
        super().__init__(identities=identities)
        self._lock = threading.Lock()
        self._in_flight = 0
        self.max_in_flight = 0

    def process_info(self, identity, fields=("reductions", "memory", "status")):
        with self._lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            threading.Event().wait(0.1)
            return super().process_info(identity, fields)
        finally:
            with self._lock:
                self._in_flight -= 1


def test_inspect_real_node(node_server, cookie):
    inspector = ProcessInspector(node_server.address, cookie)

    descriptors = inspector.inspect()

    assert len(descriptors) > 0
    assert all(isinstance(descriptor, ProcessDescriptor) for descriptor in descriptors)
    assert str(os.getpid()) in {descriptor.identity for descriptor in descriptors}


def test_result_is_subsequence_of_listing(make_node, cookie):
    runtime = FakeRuntime(identities=["5", "1", "4", "2", "3"], stale=["4", "2"])
    node = make_node(runtime)

    descriptors = ProcessInspector(node.address, cookie, max_workers=3).inspect()

    assert [descriptor.identity for descriptor in descriptors] == ["5", "1", "3"]
    assert len(descriptors) <= len(runtime.identities)
    assert descriptors[0] == ProcessDescriptor(
        identity="5",
        reduction_count=5,
        memory_bytes=5 * 1024,
        status=ProcessStatus.RUNNING,
    )


def test_all_stale(make_node, cookie):
    node = make_node(FakeRuntime(identities=["1", "2"], stale=["1", "2"]))

    assert ProcessInspector(node.address, cookie).inspect() == []


def test_empty_listing(make_node, cookie):
    node = make_node(FakeRuntime(identities=[]))

    assert ProcessInspector(node.address, cookie).inspect() == []


def test_stale_real_process_is_skipped(make_node, cookie, dead_pid):
    live = str(os.getpid())
    # List a reaped child next to ourselves and let psutil describe both
    node = make_node(ListingRuntime([str(dead_pid), live]))

    descriptors = ProcessInspector(node.address, cookie).inspect()

    assert [descriptor.identity for descriptor in descriptors] == [live]


def test_auth_failure_returns_nothing(make_node, cookie):
    node = make_node(FakeRuntime())
    inspector = ProcessInspector(node.address, b"wrong-" + cookie)

    descriptors = None
    with pytest.raises(AuthError):
        descriptors = inspector.inspect()

    assert descriptors is None


def test_connection_refused(unused_address, cookie):
    with pytest.raises(NodeConnectionError):
        ProcessInspector(unused_address, cookie).inspect()


def test_bad_fields_abort_inspection(node_server, cookie):
    with pytest.raises(BadRequestError):
        ProcessInspector(node_server.address, cookie, fields=("bogus",)).inspect()


def test_field_subset(make_node, cookie):
    node = make_node(FakeRuntime(identities=["2"]))

    descriptors = ProcessInspector(node.address, cookie, fields=("status",)).inspect()

    assert descriptors == [ProcessDescriptor("2", 0, 0, ProcessStatus.RUNNING)]


def test_detail_requests_fan_out(make_node, cookie):
    runtime = ConcurrencyRuntime(identities=[str(i) for i in range(1, 9)])
    node = make_node(runtime)

    descriptors = ProcessInspector(node.address, cookie, max_workers=4).inspect()

    assert len(descriptors) == 8
    assert 1 < runtime.max_in_flight <= 4


def test_single_worker_is_sequential(make_node, cookie):
    runtime = ConcurrencyRuntime(identities=["1", "2", "3"])
    node = make_node(runtime)

    ProcessInspector(node.address, cookie, max_workers=1).inspect()

    assert runtime.max_in_flight == 1


def test_invalid_max_workers(cookie):
    with pytest.raises(ValueError):
        ProcessInspector(("127.0.0.1", 1), cookie, max_workers=0)
