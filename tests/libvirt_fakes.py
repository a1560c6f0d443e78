"""In-memory stand-ins for libvirt connections and domains.

Only the calls the host and VM layers make are implemented. Importing this
module requires the libvirt bindings (for constants and libvirtError).
"""

from uuid import uuid4
from xml.etree import ElementTree

import libvirt

DOMAIN_XML = """
<domain type='kvm'>
  <name>{name}</name>
  <uuid>{uuid}</uuid>
  <metadata>
    <libosinfo:libosinfo xmlns:libosinfo="http://libosinfo.org/xmlns/libvirt/domain/1.0">
      <libosinfo:os id="{os_id}"/>
    </libosinfo:libosinfo>
  </metadata>
  <memory unit='KiB'>2097152</memory>
  <vcpu>2</vcpu>
  <cputune>
    <period>100000</period>
    <quota>50000</quota>
  </cputune>
  <devices>
    <disk type='file' device='disk'>
      <source file='/var/lib/libvirt/images/{name}.qcow2'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <disk type='file' device='cdrom'>
      <target dev='sda' bus='sata'/>
    </disk>
    <interface type='user'>
      <model type='virtio'/>
    </interface>
    <video>
      <model type='qxl' vram='16384' heads='2'/>
    </video>
  </devices>
</domain>
"""


def libvirt_error(code, message="libvirt failure"):
    error = libvirt.libvirtError(message)
    error.err = (code, 0, message, libvirt.VIR_ERR_ERROR, None, None, None, 0, 0)
    return error


class FakeDomain:
    def __init__(
        self,
        name,
        state=libvirt.VIR_DOMAIN_SHUTOFF,
        os_id="http://ubuntu.com/ubuntu/22.04",
        disks=None,
        obeys_shutdown=True,
        xml=None,
    ):
        self._name = name
        self._uuid = str(uuid4())
        self.state = state
        self.obeys_shutdown = obeys_shutdown
        self.xml = xml or DOMAIN_XML.format(name=name, uuid=self._uuid, os_id=os_id)
        # dev -> (capacity, allocation, physical)
        self.disks = disks if disks is not None else {"vda": (20_000, 5_000, 5_000)}
        self.metadata_xml = None
        self.updated_devices = []
        self.calls = []

    def name(self):
        return self._name

    def UUIDString(self):
        return self._uuid

    def info(self):
        return [self.state, 2097152, 2097152, 2, 0]

    def XMLDesc(self, flags=0):
        return self.xml

    def blockInfo(self, dev, flags=0):
        if dev not in self.disks:
            raise libvirt_error(libvirt.VIR_ERR_INVALID_ARG, f"no disk {dev}")
        return list(self.disks[dev])

    def isActive(self):
        return self.state in (libvirt.VIR_DOMAIN_RUNNING, libvirt.VIR_DOMAIN_PAUSED, libvirt.VIR_DOMAIN_BLOCKED)

    def create(self):
        self.calls.append("create")
        self.state = libvirt.VIR_DOMAIN_RUNNING
        return 0

    def resume(self):
        self.calls.append("resume")
        self.state = libvirt.VIR_DOMAIN_RUNNING
        return 0

    def shutdown(self):
        self.calls.append("shutdown")
        if self.obeys_shutdown:
            self.state = libvirt.VIR_DOMAIN_SHUTOFF
        return 0

    def destroy(self):
        self.calls.append("destroy")
        self.state = libvirt.VIR_DOMAIN_SHUTOFF
        return 0

    def undefineFlags(self, flags=0):
        self.calls.append("undefine")
        return 0

    def metadata(self, type, uri, flags=0):
        if self.metadata_xml is None:
            raise libvirt_error(libvirt.VIR_ERR_NO_DOMAIN_METADATA, "no metadata")
        return self.metadata_xml

    def setMetadata(self, type, metadata, key, uri, flags=0):
        self.metadata_xml = metadata
        return 0

    def updateDeviceFlags(self, xml, flags=0):
        self.updated_devices.append(xml)
        return 0


class FakeVolume:
    def __init__(self, path, deleted):
        self.path = path
        self.deleted = deleted

    def delete(self, flags=0):
        self.deleted.append(self.path)
        return 0


class FakeConnection:
    def __init__(self, domains=()):
        self.domains = list(domains)
        self.broken = False
        self.closed = False
        self.deleted_volumes = []

    def _check(self):
        if self.broken:
            raise libvirt_error(libvirt.VIR_ERR_SYSTEM_ERROR, "Cannot recv data: Connection reset by peer")

    def listAllDomains(self, flags=0):
        self._check()
        return list(self.domains)

    def lookupByUUIDString(self, uuid):
        self._check()
        for dom in self.domains:
            if dom.UUIDString() == uuid:
                return dom
        raise libvirt_error(libvirt.VIR_ERR_NO_DOMAIN, f"Domain not found: {uuid}")

    def lookupByName(self, name):
        self._check()
        for dom in self.domains:
            if dom.name() == name:
                return dom
        raise libvirt_error(libvirt.VIR_ERR_NO_DOMAIN, f"Domain not found: {name}")

    def defineXML(self, xml):
        self._check()
        dom = FakeDomain(ElementTree.fromstring(xml).findtext("name"))
        self.domains.append(dom)
        return dom

    def storageVolLookupByPath(self, path):
        self._check()
        return FakeVolume(path, self.deleted_volumes)

    def close(self):
        self.closed = True
        return 0
