"""Shared fixtures: physical machines, VM descriptors and fake collaborators.

The fakes stand in for the connection manager (list of connected hosts) and
the per-host VM source, so the search engine can run without libvirt.
"""

import importlib.util
from uuid import uuid4

import pytest

from core.errors import ConnectionFailureError
from core.search_manager import SearchManager
from schemas.machines import PhysicalMachine, VirtualMachine

HOST_A = PhysicalMachine(address="10.0.0.1", port=16509, username="admin", password="secret")
HOST_B = PhysicalMachine(address="10.0.0.2", port=16509, username="admin", password="secret")
HOST_C = PhysicalMachine(address="10.0.0.3", port=16509, username="admin", password="secret")


def pytest_report_header(config):
    if importlib.util.find_spec("libvirt") is None:
        return "libvirt bindings: NOT installed, connection/host/VM/API tests will be skipped"
    return "libvirt bindings: installed"


class FakeConnectedHosts:
    def __init__(self, hosts=()):
        self.hosts = list(hosts)

    def get_connected_physical_machines(self):
        return list(self.hosts)


class FakeVmSource:
    def __init__(self, vms_by_host=None, failing=(), on_call=None):
        self.vms_by_host = dict(vms_by_host or {})
        self.failing = set(failing)
        self.on_call = on_call
        self.calls = []

    def get_virtual_machines(self, host):
        self.calls.append(host)
        if self.on_call is not None:
            self.on_call(host)
        if host in self.failing:
            raise ConnectionFailureError(host, "connection refused")
        return list(self.vms_by_host.get(host, []))


@pytest.fixture
def make_vm():
    """Factory for VM descriptors with sensible defaults."""

    def factory(name="vm", host=HOST_A, **attrs):
        values = {
            "cpu_count": 1,
            "monitor_count": 1,
            "ram_size": 1024,
            "vram_size": 16,
            "hdd_total_size": 10_000,
            "hdd_free_space": 5_000,
            "os_type": "Linux",
            "os_identifier": "http://ubuntu.com/ubuntu/22.04",
        }
        values.update(attrs)
        return VirtualMachine(id=uuid4(), name=name, host=host, **values)

    return factory


@pytest.fixture
def make_engine():
    """Build a SearchManager over a fake fleet: {host: [vms]}."""

    def factory(vms_by_host, max_deviation=0, failing=(), gather_workers=1, on_call=None):
        hosts = FakeConnectedHosts(vms_by_host.keys())
        source = FakeVmSource(vms_by_host, failing=failing, on_call=on_call)
        engine = SearchManager(hosts, source, max_deviation=max_deviation, gather_workers=gather_workers)
        return engine, hosts, source

    return factory
