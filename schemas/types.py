from enum import Enum


class SearchCriterionType(str, Enum):
    """
    Which attribute of a virtual machine one search round looks at.

    A search order is a sequence of these literals; the first literal is the
    criterion with the highest priority.
    """

    ID = "ID"
    NAME = "NAME"
    OS_TYPE = "OS_TYPE"
    OS_IDENTIFIER = "OS_IDENTIFIER"
    CPU_COUNT = "CPU_COUNT"
    CPU_EXEC_CAP = "CPU_EXEC_CAP"
    RAM = "RAM"
    HDD_FREE_SPACE = "HDD_FREE_SPACE"
    VRAM = "VRAM"
    MONITOR_COUNT = "MONITOR_COUNT"
    HDD_TOTAL_SIZE = "HDD_TOTAL_SIZE"

    @property
    def is_capacity(self) -> bool:
        """True for the numeric attributes eligible for tolerance."""
        return self in CAPACITY_CRITERIA


CAPACITY_CRITERIA = frozenset(
    {
        SearchCriterionType.RAM,
        SearchCriterionType.VRAM,
        SearchCriterionType.HDD_TOTAL_SIZE,
        SearchCriterionType.HDD_FREE_SPACE,
    }
)

DEFAULT_SEARCH_ORDER = (
    SearchCriterionType.ID,
    SearchCriterionType.NAME,
    SearchCriterionType.OS_TYPE,
    SearchCriterionType.OS_IDENTIFIER,
    SearchCriterionType.CPU_COUNT,
    SearchCriterionType.CPU_EXEC_CAP,
    SearchCriterionType.RAM,
    SearchCriterionType.HDD_FREE_SPACE,
    SearchCriterionType.VRAM,
    SearchCriterionType.MONITOR_COUNT,
    SearchCriterionType.HDD_TOTAL_SIZE,
)


class SearchMode(str, Enum):
    ABSOLUTE_EQUALITY = "ABSOLUTE_EQUALITY"
    TOLERANT = "TOLERANT"


class ProtocolType(str, Enum):
    TCP = "TCP"
    UDP = "UDP"


class CloneType(str, Enum):
    # independent copy of every disk
    FULL = "FULL"
    # copy-on-write clone sharing blocks with the original disks
    LINKED = "LINKED"


class ClosingAction(str, Enum):
    NONE = "NONE"
    SHUT_DOWN_RUNNING_VM = "SHUT_DOWN_RUNNING_VM"
