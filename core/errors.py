class VirtualToolError(Exception):
    """
    Base class for failures reported by the host and VM layers.
    """


class ConnectionFailureError(VirtualToolError):
    """
    libvirt could not reach a physical machine (or lost the connection).
    """

    def __init__(self, host, reason: str = "") -> None:
        self.host = host
        self.reason = reason
        message = f"Connection to physical machine {host} failed"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class UnknownVirtualMachineError(VirtualToolError):
    pass


class UnexpectedVMStateError(VirtualToolError):
    pass


class UnknownPortRuleError(VirtualToolError):
    pass
