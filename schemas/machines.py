from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.types import ProtocolType

UNKNOWN_OS = "Unknown"


class PhysicalMachine(BaseModel):
    """
    A remote host running libvirtd.

    Two physical machines are the same host only when address, port,
    username and password all match.
    """

    model_config = ConfigDict(frozen=True)

    address: str = Field(..., description="IP address or hostname of the host")
    port: int = Field(..., ge=1, le=65535, description="Port of the libvirt daemon")
    username: str = Field("", description="User used for SASL authentication")
    password: str = Field("", description="Password used for SASL authentication")

    @field_validator("address")
    @classmethod
    def _address_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("address of a physical machine must not be empty")
        return value

    @field_validator("username", "password", mode="before")
    @classmethod
    def _strip_credentials(cls, value):
        if value is None:
            return ""
        return str(value).strip()

    def __str__(self) -> str:
        password = "***" if self.password else '""'
        username = self.username or '""'
        return (
            f"[Physical machine: address={self.address}, port={self.port}, "
            f"username={username}, password={password}]"
        )


class VirtualMachine(BaseModel):
    """
    Capacity descriptor of one virtual machine as reported by its host.

    Sizes: ram_size and vram_size in MiB, hdd_* in bytes,
    cpu_execution_cap in percent.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID
    name: str
    host: PhysicalMachine
    cpu_count: int = Field(0, ge=0)
    monitor_count: int = Field(0, ge=0)
    cpu_execution_cap: int = Field(100, ge=0, le=100)
    hdd_total_size: int = Field(0, ge=0)
    hdd_free_space: int = Field(0, ge=0)
    ram_size: int = Field(0, ge=0)
    vram_size: int = Field(0, ge=0)
    os_type: str = UNKNOWN_OS
    os_identifier: str = UNKNOWN_OS

    @field_validator("os_type", "os_identifier", mode="before")
    @classmethod
    def _unknown_if_blank(cls, value):
        if value is None or not str(value).strip():
            return UNKNOWN_OS
        return value

    def __str__(self) -> str:
        return f"[Virtual machine: id={self.id}, name={self.name}, host machine={self.host}]"


class PortRule(BaseModel):
    """
    NAT port-forwarding rule (host_ip:host_port -> guest_ip:guest_port).

    A rule is identified by its name together with its host port.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    protocol: ProtocolType = ProtocolType.TCP
    host_ip: str = ""
    host_port: int = Field(..., ge=1, le=65535)
    guest_ip: str = ""
    guest_port: int = Field(..., ge=1, le=65535)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("port rule name must not be empty")
        return value

    def __eq__(self, other) -> bool:
        if not isinstance(other, PortRule):
            return NotImplemented
        return self.name == other.name and self.host_port == other.host_port

    def __hash__(self) -> int:
        return hash((self.name, self.host_port))

    def __str__(self) -> str:
        host_ip = self.host_ip or '""'
        guest_ip = self.guest_ip or '""'
        return (
            f"[Port rule: name={self.name}, protocol={self.protocol.value}, "
            f"hostIP={host_ip}, hostPort={self.host_port}, "
            f"guestIP={guest_ip}, guestPort={self.guest_port}]"
        )
