from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from schemas.types import SearchCriterionType

# criterion type -> SearchCriteria field holding the required value
CRITERIA_FIELDS = {
    SearchCriterionType.ID: "vm_id",
    SearchCriterionType.NAME: "name",
    SearchCriterionType.OS_TYPE: "os_type",
    SearchCriterionType.OS_IDENTIFIER: "os_identifier",
    SearchCriterionType.CPU_COUNT: "cpu_count",
    SearchCriterionType.CPU_EXEC_CAP: "cpu_execution_cap",
    SearchCriterionType.RAM: "ram_size",
    SearchCriterionType.HDD_FREE_SPACE: "hdd_free_space",
    SearchCriterionType.VRAM: "vram_size",
    SearchCriterionType.MONITOR_COUNT: "monitor_count",
    SearchCriterionType.HDD_TOTAL_SIZE: "hdd_total_size",
}


class SearchCriteria(BaseModel):
    """
    Required properties of the searched virtual machines.

    Every field is optional. A field counts as unspecified when it is None,
    a blank string or a negative number; unspecified fields never take part
    in a search.
    """

    model_config = ConfigDict(frozen=True)

    vm_id: Optional[UUID] = None
    name: Optional[str] = None
    os_type: Optional[str] = None
    os_identifier: Optional[str] = None
    cpu_count: Optional[int] = None
    cpu_execution_cap: Optional[int] = None
    monitor_count: Optional[int] = Field(None, description="Number of monitors")
    ram_size: Optional[int] = Field(None, description="RAM in MiB")
    vram_size: Optional[int] = Field(None, description="Video RAM in MiB")
    hdd_total_size: Optional[int] = Field(None, description="Total disk size in bytes")
    hdd_free_space: Optional[int] = Field(None, description="Free disk space in bytes")

    def value_for(self, criterion: SearchCriterionType) -> Any:
        """
        Return the required value for a criterion, or None when unspecified.
        """
        value = getattr(self, CRITERIA_FIELDS[criterion])
        if value is None:
            return None
        if isinstance(value, str):
            return value if value.strip() else None
        if isinstance(value, int) and value < 0:
            return None
        return value

    def is_specified(self, criterion: SearchCriterionType) -> bool:
        return self.value_for(criterion) is not None

    def is_vacuous(self) -> bool:
        return not any(self.is_specified(criterion) for criterion in SearchCriterionType)
