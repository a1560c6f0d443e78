import subprocess
from typing import List, Optional
from urllib.parse import urlparse
from uuid import UUID
from xml.etree import ElementTree

import libvirt

from config.settings import VIRT_CLONE_BINARY
from core.errors import UnexpectedVMStateError, VirtualToolError
from core.libvirt_helpers import (
    ACTIVE_STATES,
    build_uri,
    host_call,
    is_connection_error,
    lookup_domain,
    translate_error,
)
from core.logger import log_error, log_event
from core.vm_controller import VMController
from schemas.machines import PhysicalMachine, VirtualMachine
from schemas.types import CloneType

LIBOSINFO_NS = "http://libosinfo.org/xmlns/libvirt/domain/1.0"

# libosinfo vendor -> OS family
OS_FAMILIES = {
    "almalinux.org": "Linux",
    "archlinux.org": "Linux",
    "centos.org": "Linux",
    "debian.org": "Linux",
    "fedoraproject.org": "Linux",
    "opensuse.org": "Linux",
    "redhat.com": "Linux",
    "rockylinux.org": "Linux",
    "suse.com": "Linux",
    "ubuntu.com": "Linux",
    "microsoft.com": "Windows",
    "freebsd.org": "BSD",
    "netbsd.org": "BSD",
    "openbsd.org": "BSD",
    "apple.com": "MacOS",
    "oracle.com": "Solaris",
}


def _os_of(root: ElementTree.Element) -> tuple:
    """
    (os_type, os_identifier) from the libosinfo metadata of a domain.
    """
    os_el = root.find(f"./metadata/{{{LIBOSINFO_NS}}}libosinfo/{{{LIBOSINFO_NS}}}os")
    if os_el is None or not os_el.get("id"):
        return None, None
    os_id = os_el.get("id")
    vendor = (urlparse(os_id).hostname or "").lower()
    return OS_FAMILIES.get(vendor), os_id


def _cpu_execution_cap(root: ElementTree.Element) -> int:
    quota = root.findtext("./cputune/quota")
    period = root.findtext("./cputune/period")
    if not quota or not period:
        return 100
    quota, period = int(quota), int(period)
    if quota <= 0 or period <= 0:
        return 100
    return min(100, quota * 100 // period)


def _video(root: ElementTree.Element) -> tuple:
    """
    (monitor count, video RAM in MiB) summed over all video devices.
    """
    monitors = 0
    vram_kib = 0
    for model in root.findall("./devices/video/model"):
        if model.get("type") == "none":
            continue
        monitors += int(model.get("heads", "1"))
        vram_kib += int(model.get("vram", "0"))
    return monitors, vram_kib // 1024


def describe_domain(dom, host: PhysicalMachine) -> VirtualMachine:
    """
    Build the capacity descriptor of a libvirt domain.
    """
    _, max_memory_kib, _, vcpus, _ = dom.info()
    root = ElementTree.fromstring(dom.XMLDesc(0))

    total = 0
    free = 0
    for disk in root.findall("./devices/disk[@device='disk']"):
        target = disk.find("target")
        if target is None:
            continue
        try:
            capacity, allocation, _ = dom.blockInfo(target.get("dev"))
        except libvirt.libvirtError as e:
            if is_connection_error(e):
                raise
            # e.g. the backing volume is gone
            continue
        total += capacity
        free += max(capacity - allocation, 0)

    monitors, vram_mib = _video(root)
    os_type, os_identifier = _os_of(root)

    return VirtualMachine(
        id=UUID(dom.UUIDString()),
        name=dom.name(),
        host=host,
        cpu_count=vcpus,
        monitor_count=monitors,
        cpu_execution_cap=_cpu_execution_cap(root),
        hdd_total_size=total,
        hdd_free_space=free,
        ram_size=max_memory_kib // 1024,
        vram_size=vram_mib,
        os_type=os_type,
        os_identifier=os_identifier,
    )


class HostManager:
    """
    Operations on the set of virtual machines of one connected host.

    A connection failure while talking to the host disconnects it and is
    raised as ConnectionFailureError.
    """

    def __init__(self, host: PhysicalMachine, connection_manager) -> None:
        self.host = host
        self.connection_manager = connection_manager

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _conn(self):
        return self.connection_manager.get_connection(self.host)

    def _check_owner(self, vm: VirtualMachine) -> None:
        if vm.host != self.host:
            raise ValueError(f"VM {vm} does not belong to physical machine {self.host}")

    def _free_clone_name(self, conn, name: str) -> str:
        existing = {dom.name() for dom in conn.listAllDomains(0)}
        candidate = f"{name}_clone"
        index = 1
        while candidate in existing:
            index += 1
            candidate = f"{name}_clone{index}"
        return candidate

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_virtual_machines(self) -> List[VirtualMachine]:
        conn = self._conn()
        action = f"listing VMs of {self.host}"
        with host_call(self.connection_manager, self.host, action):
            domains = conn.listAllDomains(0)

        vms: List[VirtualMachine] = []
        for dom in domains:
            try:
                vms.append(describe_domain(dom, self.host))
            except libvirt.libvirtError as e:
                if is_connection_error(e):
                    raise translate_error(self.connection_manager, self.host, action, e) from e
                # domain undefined while we were listing
                continue
        return vms

    def find_virtual_machine_by_id(self, vm_id: UUID) -> VirtualMachine:
        conn = self._conn()
        with host_call(self.connection_manager, self.host, f"lookup of VM {vm_id}"):
            dom = conn.lookupByUUIDString(str(vm_id))
            return describe_domain(dom, self.host)

    def find_virtual_machine_by_name(self, name: str) -> VirtualMachine:
        if not name or not name.strip():
            raise ValueError("VM name must not be empty")
        conn = self._conn()
        with host_call(self.connection_manager, self.host, f"lookup of VM {name!r}"):
            dom = conn.lookupByName(name)
            return describe_domain(dom, self.host)

    def register_virtual_machine(self, domain_xml: str) -> VirtualMachine:
        """
        Define a domain from its XML; an already defined name is reused.
        """
        name = ElementTree.fromstring(domain_xml).findtext("name")
        if not name or not name.strip():
            raise ValueError("Domain XML must contain a non-empty <name>")

        conn = self._conn()
        with host_call(self.connection_manager, self.host, f"registration of VM {name!r}"):
            try:
                dom = conn.lookupByName(name)
                log_event(f"[host] VM {name!r} is already registered on {self.host}")
            except libvirt.libvirtError as e:
                if e.get_error_code() != libvirt.VIR_ERR_NO_DOMAIN:
                    raise
                dom = conn.defineXML(domain_xml)
                log_event(f"[host] VM {name!r} has been registered on {self.host}")
            return describe_domain(dom, self.host)

    def remove_virtual_machine(self, vm: VirtualMachine) -> None:
        """
        Undefine a shut off VM and delete its disk volumes.
        """
        self._check_owner(vm)
        conn = self._conn()
        with host_call(self.connection_manager, self.host, f"removal of VM {vm}"):
            dom = lookup_domain(conn, vm)
            if dom.isActive():
                raise UnexpectedVMStateError(f"VM {vm} must be shut off before it is removed")
            root = ElementTree.fromstring(dom.XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE))
            dom.undefineFlags(
                libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
                | libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
            )

        for source in root.findall("./devices/disk[@device='disk']/source"):
            path = source.get("file")
            if not path:
                continue
            try:
                conn.storageVolLookupByPath(path).delete(0)
                log_event(f"[host] Deleted disk {path} of VM {vm}")
            except libvirt.libvirtError as e:
                if is_connection_error(e):
                    raise translate_error(self.connection_manager, self.host, f"removal of VM {vm}", e) from e
                log_error(f"[host] Disk {path} of removed VM {vm} could not be deleted: {e}")

        log_event(f"[host] VM {vm} removed from {self.host}")

    def clone_virtual_machine(
        self,
        vm: VirtualMachine,
        clone_type: CloneType = CloneType.FULL,
        clone_name: Optional[str] = None,
    ) -> VirtualMachine:
        """
        Clone a shut off VM with virt-clone and return the clone.

        LINKED clones share unchanged blocks with the original disks.
        """
        self._check_owner(vm)
        conn = self._conn()
        with host_call(self.connection_manager, self.host, f"cloning of VM {vm}"):
            if lookup_domain(conn, vm).isActive():
                raise UnexpectedVMStateError(f"VM {vm} must be shut off before it is cloned")
            clone_name = clone_name or self._free_clone_name(conn, vm.name)

        cmd = [
            VIRT_CLONE_BINARY,
            "--connect",
            build_uri(self.host),
            "--original",
            vm.name,
            "--name",
            clone_name,
            "--auto-clone",
        ]
        if clone_type is CloneType.LINKED:
            cmd.append("--reflink")

        log_event(f"[host] Cloning VM {vm} as {clone_name!r}: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise VirtualToolError(f"{VIRT_CLONE_BINARY} not found: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            stdout = (result.stdout or "").strip()
            combined = "\n".join(part for part in [stderr, stdout] if part) or "unknown error"
            log_error(f"[host] Cloning of VM {vm} FAILED: {combined}")
            raise VirtualToolError(f"Cloning of VM {vm} failed: {combined}")

        log_event(f"[host] Cloning of VM {vm} finished successfully")
        return self.find_virtual_machine_by_name(clone_name)

    def close(self) -> None:
        """
        Shut down every VM of the host that is still running.
        """
        controller = VMController(self.connection_manager)
        conn = self._conn()
        log_event(f"[host] Stopping work with VMs on {self.host}")
        for vm in self.get_virtual_machines():
            with host_call(self.connection_manager, self.host, f"state of VM {vm}"):
                state = lookup_domain(conn, vm).info()[0]
            if state in ACTIVE_STATES:
                controller.shut_down_vm(vm)
        log_event(f"[host] Work with VMs on {self.host} was successfully stopped")
