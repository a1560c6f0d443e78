"""Tests for VM lifecycle and port forwarding."""

from xml.etree import ElementTree

import pytest

libvirt = pytest.importorskip("libvirt")
pytestmark = pytest.mark.libvirt

from conftest import HOST_A  # noqa: E402
from core.connection_manager import ConnectedPhysicalMachines, ConnectionManager  # noqa: E402
from core.errors import UnexpectedVMStateError, UnknownPortRuleError  # noqa: E402
from core.vm_controller import VMController  # noqa: E402
from libvirt_fakes import DOMAIN_XML, FakeConnection, FakeDomain  # noqa: E402
from schemas.machines import PortRule  # noqa: E402
from schemas.types import ProtocolType  # noqa: E402

SSH = PortRule(name="ssh", host_port=2222, guest_port=22)
DNS = PortRule(name="dns", protocol=ProtocolType.UDP, host_ip="127.0.0.1", host_port=5353, guest_port=53)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("core.vm_controller.time.sleep", lambda _: None)


@pytest.fixture
def setup():
    """(controller, connection manager, host manager) over one host."""

    def factory(*domains):
        connection_manager = ConnectionManager(ConnectedPhysicalMachines())
        connection_manager.registry.add(HOST_A, FakeConnection(domains))
        return VMController(connection_manager), connection_manager.host_manager(HOST_A)

    return factory


class TestLifecycle:
    def test_start_shut_off_vm(self, setup):
        dom = FakeDomain("web")
        controller, host = setup(dom)
        vm = host.find_virtual_machine_by_name("web")

        controller.start_vm(vm)

        assert dom.calls == ["create"]
        assert controller.get_vm_state(vm) == "running"

    def test_start_running_vm_fails(self, setup):
        controller, host = setup(FakeDomain("web", state=libvirt.VIR_DOMAIN_RUNNING))
        with pytest.raises(UnexpectedVMStateError):
            controller.start_vm(host.find_virtual_machine_by_name("web"))

    def test_start_paused_vm_resumes(self, setup):
        dom = FakeDomain("web", state=libvirt.VIR_DOMAIN_PAUSED)
        controller, host = setup(dom)

        controller.start_vm(host.find_virtual_machine_by_name("web"))

        assert dom.calls == ["resume"]

    def test_shut_down_is_noop_when_shut_off(self, setup):
        dom = FakeDomain("web")
        controller, host = setup(dom)

        controller.shut_down_vm(host.find_virtual_machine_by_name("web"))

        assert dom.calls == []

    def test_graceful_shutdown(self, setup):
        dom = FakeDomain("web", state=libvirt.VIR_DOMAIN_RUNNING)
        controller, host = setup(dom)

        controller.shut_down_vm(host.find_virtual_machine_by_name("web"))

        assert dom.calls == ["shutdown"]

    def test_forced_power_off(self, setup):
        dom = FakeDomain("web", state=libvirt.VIR_DOMAIN_RUNNING, obeys_shutdown=False)
        controller, host = setup(dom)
        vm = host.find_virtual_machine_by_name("web")

        controller.shut_down_vm(vm)

        assert dom.calls == ["shutdown", "destroy"]
        assert controller.get_vm_state(vm) == "shut off"


class TestPortRules:
    def test_no_rules_initially(self, setup):
        controller, host = setup(FakeDomain("web"))
        assert controller.get_port_rules(host.find_virtual_machine_by_name("web")) == []

    def test_added_rules_are_listed_and_forwarded(self, setup):
        dom = FakeDomain("web")
        controller, host = setup(dom)
        vm = host.find_virtual_machine_by_name("web")

        controller.add_port_rule(vm, SSH)
        controller.add_port_rule(vm, DNS)

        rules = controller.get_port_rules(vm)
        assert [rule.name for rule in rules] == ["ssh", "dns"]
        assert rules[1].protocol is ProtocolType.UDP
        assert rules[1].host_ip == "127.0.0.1"
        assert rules[1].guest_port == 53

        interface = ElementTree.fromstring(dom.updated_devices[-1])
        assert interface.find("backend").get("type") == "passt"
        forwards = interface.findall("portForward")
        assert [f.get("proto") for f in forwards] == ["tcp", "udp"]
        assert forwards[1].get("address") == "127.0.0.1"
        assert forwards[0].find("range").attrib == {"start": "2222", "to": "22"}

    def test_duplicate_name_rejected(self, setup):
        controller, host = setup(FakeDomain("web"))
        vm = host.find_virtual_machine_by_name("web")
        controller.add_port_rule(vm, SSH)

        with pytest.raises(ValueError):
            controller.add_port_rule(vm, PortRule(name="ssh", host_port=2200, guest_port=22))

    def test_taken_host_port_rejected(self, setup):
        controller, host = setup(FakeDomain("web"))
        vm = host.find_virtual_machine_by_name("web")
        controller.add_port_rule(vm, SSH)

        with pytest.raises(ValueError):
            controller.add_port_rule(vm, PortRule(name="ssh2", host_port=2222, guest_port=2022))
        with pytest.raises(ValueError):
            controller.add_port_rule(
                vm, PortRule(name="ssh-udp", protocol=ProtocolType.UDP, host_port=2222, guest_port=22)
            )
        assert controller.get_port_rules(vm) == [SSH]

    def test_delete_rule(self, setup):
        dom = FakeDomain("web")
        controller, host = setup(dom)
        vm = host.find_virtual_machine_by_name("web")
        controller.add_port_rule(vm, SSH)
        controller.add_port_rule(vm, DNS)

        controller.delete_port_rule(vm, "ssh")

        assert [rule.name for rule in controller.get_port_rules(vm)] == ["dns"]
        assert len(ElementTree.fromstring(dom.updated_devices[-1]).findall("portForward")) == 1

    def test_delete_unknown_rule(self, setup):
        controller, host = setup(FakeDomain("web"))
        with pytest.raises(UnknownPortRuleError):
            controller.delete_port_rule(host.find_virtual_machine_by_name("web"), "ssh")

    def test_delete_all_rules(self, setup):
        dom = FakeDomain("web")
        controller, host = setup(dom)
        vm = host.find_virtual_machine_by_name("web")
        controller.add_port_rule(vm, SSH)
        controller.add_port_rule(vm, DNS)

        controller.delete_all_port_rules(vm)

        assert dom.metadata_xml is None
        assert ElementTree.fromstring(dom.updated_devices[-1]).findall("portForward") == []

    def test_vm_without_user_interface(self, setup):
        xml = DOMAIN_XML.format(name="web", uuid="00000000-0000-0000-0000-000000000001", os_id="x")
        xml = xml.replace("type='user'", "type='network'")
        dom = FakeDomain("web", xml=xml)
        dom._uuid = "00000000-0000-0000-0000-000000000001"
        controller, host = setup(dom)

        with pytest.raises(UnexpectedVMStateError):
            controller.add_port_rule(host.find_virtual_machine_by_name("web"), SSH)
