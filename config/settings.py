import os
from pathlib import Path

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root: vtool-manager/

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = Path(os.getenv("VTM_LOG_DIR", str(BASE_DIR / "log")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "vtool-manager.log"

# -----------------------------
# Physical hosts / libvirt
# -----------------------------

# common examples:
#   qemu+tcp://{address}:{port}/system   (libvirtd listening on TCP, SASL auth)
#   qemu+tls://{address}:{port}/system   (TLS transport)
#   qemu+ssh://{username}@{address}:{port}/system
LIBVIRT_URI_TEMPLATE = os.getenv(
    "LIBVIRT_URI_TEMPLATE",
    "qemu+tcp://{address}:{port}/system",
)

CONNECT_ATTEMPTS = int(os.getenv("CONNECT_ATTEMPTS", "3"))
# pause between two connection attempts, negative value = single attempt
CONNECT_RETRY_DELAY_MS = int(os.getenv("CONNECT_RETRY_DELAY_MS", "2000"))

# -----------------------------
# VM lifecycle
# -----------------------------
VM_STOP_TIMEOUT_SEC = int(os.getenv("VM_STOP_TIMEOUT_SEC", "15"))
VM_START_TIMEOUT_SEC = int(os.getenv("VM_START_TIMEOUT_SEC", "10"))

VIRT_CLONE_BINARY = os.getenv("VIRT_CLONE_BINARY", "virt-clone")

# what happens to running VMs when the service stops: NONE | SHUT_DOWN_RUNNING_VM
EXIT_CLOSING_ACTION = os.getenv("EXIT_CLOSING_ACTION", "NONE").upper()

# -----------------------------
# Search
# -----------------------------
SEARCH_MAX_DEVIATION = int(os.getenv("SEARCH_MAX_DEVIATION", "0"))

# 1 = gather VM lists host after host
SEARCH_GATHER_WORKERS = int(os.getenv("SEARCH_GATHER_WORKERS", "1"))

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"

# -----------------------------
# Misc
# -----------------------------
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
