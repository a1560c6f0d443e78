import time
from threading import Lock
from typing import Dict, List, Optional

import libvirt

from config.settings import CONNECT_ATTEMPTS, CONNECT_RETRY_DELAY_MS
from core.errors import ConnectionFailureError, VirtualToolError
from core.host_manager import HostManager
from core.libvirt_helpers import build_uri, libvirt_error_handler
from core.logger import log_error, log_event
from core.metrics import record_connect_failure, record_connected_hosts
from schemas.machines import PhysicalMachine
from schemas.types import ClosingAction


class ConnectedPhysicalMachines:
    """
    Registry of connected physical machines and their libvirt connections.

    Insertion order is kept, so hosts are listed in the order they connected.
    """

    def __init__(self) -> None:
        self._connections: Dict[PhysicalMachine, "libvirt.virConnect"] = {}
        self._lock = Lock()

    def add(self, host: PhysicalMachine, conn) -> None:
        with self._lock:
            self._connections[host] = conn
            record_connected_hosts(len(self._connections))

    def add_if_absent(self, host: PhysicalMachine, conn):
        """
        Register `conn` unless the host already has a connection.

        Returns the connection stored for the host after the call.
        """
        with self._lock:
            stored = self._connections.setdefault(host, conn)
            record_connected_hosts(len(self._connections))
            return stored

    def remove(self, host: PhysicalMachine):
        """Remove a host and return its connection (None if it was not there)."""
        with self._lock:
            conn = self._connections.pop(host, None)
            record_connected_hosts(len(self._connections))
            return conn

    def is_connected(self, host: PhysicalMachine) -> bool:
        with self._lock:
            return host in self._connections

    def get_connection(self, host: PhysicalMachine):
        with self._lock:
            return self._connections.get(host)

    def list(self) -> List[PhysicalMachine]:
        with self._lock:
            return list(self._connections)


class ConnectionManager:
    """
    Connects to and disconnects from physical machines running libvirtd.

    Connections are opened with libvirt.openAuth so that the username and
    password of the physical machine can be handed to SASL.
    """

    def __init__(self, registry: Optional[ConnectedPhysicalMachines] = None) -> None:
        # Register global libvirt error handler to avoid noisy stderr prints
        libvirt.registerErrorHandler(libvirt_error_handler, None)
        self.registry = registry if registry is not None else ConnectedPhysicalMachines()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _credentials_callback(host: PhysicalMachine):
        def request_credentials(credentials, user_data):
            for credential in credentials:
                if credential[0] == libvirt.VIR_CRED_AUTHNAME:
                    credential[4] = host.username
                elif credential[0] == libvirt.VIR_CRED_PASSPHRASE:
                    credential[4] = host.password
                else:
                    return -1
            return 0

        return request_credentials

    def _open(self, host: PhysicalMachine):
        uri = build_uri(host)
        auth = [
            [libvirt.VIR_CRED_AUTHNAME, libvirt.VIR_CRED_PASSPHRASE],
            self._credentials_callback(host),
            None,
        ]
        conn = libvirt.openAuth(uri, auth, 0)
        if conn is None:
            raise libvirt.libvirtError(f"Failed to open libvirt connection to {uri}")
        return conn

    def _establish_connection(self, host: PhysicalMachine, retry_delay_ms: int):
        attempts = 1 if retry_delay_ms < 0 else max(CONNECT_ATTEMPTS, 1)
        last_error: Optional[libvirt.libvirtError] = None

        for attempt in range(1, attempts + 1):
            try:
                return self._open(host)
            except libvirt.libvirtError as e:
                last_error = e
                record_connect_failure()
                log_error(f"[conn] Attempt {attempt}/{attempts} to connect to {host} failed: {e}")
                if attempt < attempts:
                    time.sleep(retry_delay_ms / 1000)

        raise ConnectionFailureError(host, str(last_error))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def connect_to(
        self,
        host: PhysicalMachine,
        retry_delay_ms: int = CONNECT_RETRY_DELAY_MS,
    ) -> HostManager:
        """
        Connect to a physical machine and return a manager for its VMs.

        An already connected host is not connected again. Up to
        CONNECT_ATTEMPTS attempts are made, `retry_delay_ms` apart; a negative
        delay means a single attempt. Raises ConnectionFailureError.
        """
        if self.registry.is_connected(host):
            log_event(f"[conn] Physical machine {host} is already connected")
            return HostManager(host, self)

        log_event(f"[conn] Connecting to physical machine {host} via {build_uri(host)}")
        conn = self._establish_connection(host, retry_delay_ms)
        if self.registry.add_if_absent(host, conn) is not conn:
            # a concurrent connect_to registered the host first
            log_event(f"[conn] Physical machine {host} was connected meanwhile, closing surplus connection")
            try:
                conn.close()
            except libvirt.libvirtError as e:
                log_error(f"[conn] Closing surplus libvirt connection to {host} failed: {e}")
            return HostManager(host, self)

        log_event(f"[conn] Physical machine {host} has been connected successfully")
        return HostManager(host, self)

    def disconnect_from(
        self,
        host: PhysicalMachine,
        closing_action: ClosingAction = ClosingAction.NONE,
    ) -> bool:
        """
        Disconnect a physical machine. Returns False if it was not connected.

        With SHUT_DOWN_RUNNING_VM the running VMs of the host are shut down
        first; the host is disconnected even when that fails.
        """
        if not self.registry.is_connected(host):
            log_error(f"[conn] Physical machine {host} cannot be disconnected, it is not connected")
            return False

        log_event(f"[conn] Disconnecting from physical machine {host}")
        if closing_action is ClosingAction.SHUT_DOWN_RUNNING_VM:
            try:
                HostManager(host, self).close()
            except VirtualToolError as e:
                log_error(f"[conn] Work with VMs on {host} was not stopped properly: {e}")

        self._close_connection(host)
        log_event(f"[conn] Physical machine {host} was disconnected")
        return True

    def drop(self, host: PhysicalMachine) -> None:
        """
        Forget a host whose connection broke, without touching its VMs.
        """
        if self.registry.is_connected(host):
            log_error(f"[conn] Connection to {host} lost, physical machine will be disconnected")
            self._close_connection(host)

    def _close_connection(self, host: PhysicalMachine) -> None:
        conn = self.registry.remove(host)
        if conn is None:
            return
        try:
            conn.close()
        except libvirt.libvirtError as e:
            log_error(f"[conn] Closing libvirt connection to {host} failed: {e}")

    def is_connected(self, host: Optional[PhysicalMachine]) -> bool:
        if host is None:
            return False
        return self.registry.is_connected(host)

    def get_connected_physical_machines(self) -> List[PhysicalMachine]:
        return self.registry.list()

    def get_connection(self, host: PhysicalMachine):
        """
        Return the open libvirt connection of a host or raise
        ConnectionFailureError when the host is not connected.
        """
        conn = self.registry.get_connection(host)
        if conn is None:
            raise ConnectionFailureError(host, "physical machine is not connected")
        return conn

    def host_manager(self, host: PhysicalMachine) -> HostManager:
        return HostManager(host, self)

    def close(self, closing_action: ClosingAction = ClosingAction.SHUT_DOWN_RUNNING_VM) -> None:
        """
        Disconnect from every host, by default shutting its running VMs down.
        """
        for host in self.get_connected_physical_machines():
            self.disconnect_from(host, closing_action)


class HostVmSource:
    """
    Lists the VMs of a connected host for the search engine.
    """

    def __init__(self, connection_manager: ConnectionManager) -> None:
        self.connection_manager = connection_manager

    def get_virtual_machines(self, host: PhysicalMachine):
        return self.connection_manager.host_manager(host).get_virtual_machines()
