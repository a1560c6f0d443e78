from contextlib import contextmanager

import libvirt

from config.settings import LIBVIRT_URI_TEMPLATE
from core.errors import ConnectionFailureError, UnknownVirtualMachineError, VirtualToolError

# libvirt error codes meaning the host is gone, not that the request was wrong
CONNECTION_ERROR_CODES = frozenset(
    {
        libvirt.VIR_ERR_SYSTEM_ERROR,
        libvirt.VIR_ERR_RPC,
        libvirt.VIR_ERR_NO_CONNECT,
        libvirt.VIR_ERR_INVALID_CONN,
        libvirt.VIR_ERR_AUTH_FAILED,
    }
)

# libvirt states: 0: no state, 1: running, 2: blocked, 3: paused,
# 4: shutting down, 5: shut off, 6: crashed, 7: pmsuspended
STATE_NAMES = {
    libvirt.VIR_DOMAIN_NOSTATE: "no state",
    libvirt.VIR_DOMAIN_RUNNING: "running",
    libvirt.VIR_DOMAIN_BLOCKED: "blocked",
    libvirt.VIR_DOMAIN_PAUSED: "paused",
    libvirt.VIR_DOMAIN_SHUTDOWN: "shutting down",
    libvirt.VIR_DOMAIN_SHUTOFF: "shut off",
    libvirt.VIR_DOMAIN_CRASHED: "crashed",
    libvirt.VIR_DOMAIN_PMSUSPENDED: "pmsuspended",
}

# states in which a VM still holds host resources
ACTIVE_STATES = frozenset(
    {
        libvirt.VIR_DOMAIN_RUNNING,
        libvirt.VIR_DOMAIN_BLOCKED,
        libvirt.VIR_DOMAIN_PAUSED,
    }
)


def libvirt_error_handler(ctx, error):
    """
    Custom libvirt error handler to suppress noisy stderr messages like:
    'Domain not found: no domain with matching name ...'
    Errors still reach the caller as libvirt.libvirtError.
    """
    pass


def build_uri(host) -> str:
    return LIBVIRT_URI_TEMPLATE.format(
        address=host.address,
        port=host.port,
        username=host.username,
    )


def is_connection_error(error: libvirt.libvirtError) -> bool:
    return error.get_error_code() in CONNECTION_ERROR_CODES


def state_name(state: int) -> str:
    return STATE_NAMES.get(state, f"unknown({state})")


def translate_error(connection_manager, host, action: str, error: libvirt.libvirtError) -> VirtualToolError:
    """
    Map a libvirt error raised while talking to `host` to our exceptions.

    A broken connection drops the host from the connected ones and becomes
    ConnectionFailureError; a missing domain becomes
    UnknownVirtualMachineError; anything else becomes VirtualToolError.
    """
    if is_connection_error(error):
        connection_manager.drop(host)
        return ConnectionFailureError(host, f"{action}: {error}")
    if error.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
        return UnknownVirtualMachineError(f"{action}: {error}")
    return VirtualToolError(f"{action}: {error}")


@contextmanager
def host_call(connection_manager, host, action: str):
    try:
        yield
    except libvirt.libvirtError as e:
        raise translate_error(connection_manager, host, action, e) from e


def lookup_domain(conn, vm):
    """
    Find the libvirt domain of a VirtualMachine by its UUID.
    """
    return conn.lookupByUUIDString(str(vm.id))
