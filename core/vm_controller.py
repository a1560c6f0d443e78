import time
from typing import List
from xml.etree import ElementTree

import libvirt

from config.settings import VM_START_TIMEOUT_SEC, VM_STOP_TIMEOUT_SEC
from core.errors import UnexpectedVMStateError, UnknownPortRuleError
from core.libvirt_helpers import (
    host_call,
    is_connection_error,
    lookup_domain,
    state_name,
    translate_error,
)
from core.logger import log_event
from schemas.machines import PortRule, VirtualMachine
from schemas.types import ProtocolType

PORT_RULES_NS = "http://vtool-manager.local/xmlns/port-rules/1.0"
PORT_RULES_KEY = "vtm"


def _rules_to_metadata(rules: List[PortRule]) -> str:
    root = ElementTree.Element("rules")
    for rule in rules:
        ElementTree.SubElement(
            root,
            "rule",
            {
                "name": rule.name,
                "protocol": rule.protocol.value,
                "host_ip": rule.host_ip,
                "host_port": str(rule.host_port),
                "guest_ip": rule.guest_ip,
                "guest_port": str(rule.guest_port),
            },
        )
    return ElementTree.tostring(root, encoding="unicode")


def _rules_from_metadata(xml: str) -> List[PortRule]:
    root = ElementTree.fromstring(xml)
    return [
        PortRule(
            name=el.get("name"),
            protocol=ProtocolType(el.get("protocol", "TCP")),
            host_ip=el.get("host_ip", ""),
            host_port=int(el.get("host_port")),
            guest_ip=el.get("guest_ip", ""),
            guest_port=int(el.get("guest_port")),
        )
        for el in root.iter("rule")
    ]


def _apply_port_forwards(interface: ElementTree.Element, rules: List[PortRule]) -> None:
    """
    Replace the <portForward> elements of a user-mode interface by `rules`.

    libvirt only forwards ports for the passt backend, so it is enforced.
    """
    for forward in interface.findall("portForward"):
        interface.remove(forward)

    backend = interface.find("backend")
    if backend is None:
        backend = ElementTree.SubElement(interface, "backend")
    backend.set("type", "passt")

    for rule in rules:
        attrs = {"proto": rule.protocol.value.lower()}
        if rule.host_ip:
            attrs["address"] = rule.host_ip
        forward = ElementTree.SubElement(interface, "portForward", attrs)
        ElementTree.SubElement(
            forward,
            "range",
            {"start": str(rule.host_port), "to": str(rule.guest_port)},
        )


class VMController:
    """
    Lifecycle and port-forwarding operations on single virtual machines.

    A VirtualMachine is located on its host by UUID; the host must be
    connected through the given ConnectionManager.
    """

    def __init__(self, connection_manager) -> None:
        self.connection_manager = connection_manager

    # ------------------------------------------------------------------
    # Utility methods
    # ------------------------------------------------------------------
    def _get_domain(self, vm: VirtualMachine):
        conn = self.connection_manager.get_connection(vm.host)
        with host_call(self.connection_manager, vm.host, f"lookup of VM {vm}"):
            return lookup_domain(conn, vm)

    def _state(self, vm: VirtualMachine, dom) -> int:
        with host_call(self.connection_manager, vm.host, f"state of VM {vm}"):
            return dom.info()[0]

    # ------------------------------------------------------------------
    # Public VM operations
    # ------------------------------------------------------------------
    def get_vm_state(self, vm: VirtualMachine) -> str:
        dom = self._get_domain(vm)
        return state_name(self._state(vm, dom))

    def start_vm(self, vm: VirtualMachine) -> None:
        """
        Start VM.

        - If the VM is already running -> UnexpectedVMStateError.
        - If paused -> resume.
        - If shut off / crashed / no state -> start and wait until running.
        """
        dom = self._get_domain(vm)
        state = self._state(vm, dom)

        if state == libvirt.VIR_DOMAIN_RUNNING:
            raise UnexpectedVMStateError(f"VM {vm} is already running")

        with host_call(self.connection_manager, vm.host, f"start of VM {vm}"):
            if state == libvirt.VIR_DOMAIN_PAUSED:
                log_event(f"[vm] Resuming paused VM {vm}")
                dom.resume()
                return

            log_event(f"[vm] Starting VM {vm} from state={state_name(state)}")
            dom.create()

        waited = 0
        while waited < VM_START_TIMEOUT_SEC:
            if self._state(vm, dom) == libvirt.VIR_DOMAIN_RUNNING:
                log_event(f"[vm] VM {vm} is running")
                return
            time.sleep(1)
            waited += 1

        raise UnexpectedVMStateError(
            f"VM {vm} did not reach state running within {VM_START_TIMEOUT_SEC}s"
        )

    def shut_down_vm(self, vm: VirtualMachine) -> None:
        """
        Power a VM off.

        Strategy:
        - If VM is already shut off -> no-op.
        - Otherwise:
            1) Try graceful shutdown (ACPI)
            2) Wait up to VM_STOP_TIMEOUT_SEC for it to actually stop
            3) If still running, force poweroff with destroy()
        """
        dom = self._get_domain(vm)
        state = self._state(vm, dom)

        if state == libvirt.VIR_DOMAIN_SHUTOFF:
            log_event(f"[vm] shut_down_vm called for {vm} but it is already shut off - no-op")
            return

        try:
            log_event(f"[vm] Graceful shutdown requested for VM {vm} from state={state_name(state)}")
            dom.shutdown()
        except libvirt.libvirtError as e:
            if is_connection_error(e):
                raise translate_error(self.connection_manager, vm.host, f"shutdown of VM {vm}", e) from e
            log_event(f"[vm] Graceful shutdown failed for {vm}: {e}; will try forced destroy")

        waited = 0
        curr_state = state
        while waited < VM_STOP_TIMEOUT_SEC:
            curr_state = self._state(vm, dom)
            if curr_state == libvirt.VIR_DOMAIN_SHUTOFF:
                log_event(f"[vm] VM {vm} gracefully shut off after {waited}s")
                return
            time.sleep(1)
            waited += 1

        log_event(
            f"[vm] VM {vm} did not shut down within {VM_STOP_TIMEOUT_SEC}s "
            f"(last state={state_name(curr_state)}); attempting forced destroy()"
        )
        with host_call(self.connection_manager, vm.host, f"forced power-off of VM {vm}"):
            dom.destroy()
        log_event(f"[vm] VM {vm} forcefully powered off via destroy()")

    # ------------------------------------------------------------------
    # Port forwarding
    # ------------------------------------------------------------------
    def get_port_rules(self, vm: VirtualMachine) -> List[PortRule]:
        dom = self._get_domain(vm)
        return self._read_rules(vm, dom)

    def add_port_rule(self, vm: VirtualMachine, rule: PortRule) -> None:
        dom = self._get_domain(vm)
        rules = self._read_rules(vm, dom)

        for existing in rules:
            if existing.name == rule.name:
                raise ValueError(f"VM {vm} already has a port rule named {rule.name!r}")
            # one rule per host port, whatever the protocol
            if existing.host_port == rule.host_port:
                raise ValueError(
                    f"Host port {rule.host_port} is already forwarded by rule "
                    f"{existing.name!r} ({existing.protocol.value}) of VM {vm}"
                )

        log_event(f"[vm] Adding port-forwarding rule {rule} to VM {vm}")
        self._write_rules(vm, dom, rules + [rule])

    def delete_port_rule(self, vm: VirtualMachine, rule_name: str) -> None:
        dom = self._get_domain(vm)
        rules = self._read_rules(vm, dom)
        remaining = [rule for rule in rules if rule.name != rule_name]
        if len(remaining) == len(rules):
            raise UnknownPortRuleError(f"VM {vm} has no port rule named {rule_name!r}")

        log_event(f"[vm] Deleting port-forwarding rule {rule_name!r} of VM {vm}")
        self._write_rules(vm, dom, remaining)

    def delete_all_port_rules(self, vm: VirtualMachine) -> None:
        dom = self._get_domain(vm)
        if not self._read_rules(vm, dom):
            log_event(f"[vm] VM {vm} has no port-forwarding rules to delete")
            return
        log_event(f"[vm] Deleting all port-forwarding rules of VM {vm}")
        self._write_rules(vm, dom, [])

    def _read_rules(self, vm: VirtualMachine, dom) -> List[PortRule]:
        try:
            xml = dom.metadata(
                libvirt.VIR_DOMAIN_METADATA_ELEMENT,
                PORT_RULES_NS,
                libvirt.VIR_DOMAIN_AFFECT_CONFIG,
            )
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN_METADATA:
                return []
            raise translate_error(self.connection_manager, vm.host, f"port rules of VM {vm}", e) from e
        return _rules_from_metadata(xml)

    def _write_rules(self, vm: VirtualMachine, dom, rules: List[PortRule]) -> None:
        with host_call(self.connection_manager, vm.host, f"port rules of VM {vm}"):
            root = ElementTree.fromstring(dom.XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE))
            interface = root.find("./devices/interface[@type='user']")
            if interface is None:
                raise UnexpectedVMStateError(
                    f"VM {vm} has no user-mode network interface to forward ports to"
                )
            _apply_port_forwards(interface, rules)
            dom.updateDeviceFlags(
                ElementTree.tostring(interface, encoding="unicode"),
                libvirt.VIR_DOMAIN_AFFECT_CONFIG,
            )

            metadata = _rules_to_metadata(rules) if rules else None
            dom.setMetadata(
                libvirt.VIR_DOMAIN_METADATA_ELEMENT,
                metadata,
                PORT_RULES_KEY if rules else None,
                PORT_RULES_NS,
                libvirt.VIR_DOMAIN_AFFECT_CONFIG,
            )
