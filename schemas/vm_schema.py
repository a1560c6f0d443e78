from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from config.settings import CONNECT_RETRY_DELAY_MS
from schemas.machines import PhysicalMachine, PortRule
from schemas.search import SearchCriteria
from schemas.types import ClosingAction, CloneType, SearchCriterionType, SearchMode


class ConnectSchema(BaseModel):
    host: PhysicalMachine
    retry_delay_ms: int = Field(
        CONNECT_RETRY_DELAY_MS,
        description="Pause between connection attempts in ms, negative = single attempt",
    )


class DisconnectSchema(BaseModel):
    host: PhysicalMachine
    closing_action: ClosingAction = ClosingAction.NONE


class HostSchema(BaseModel):
    host: PhysicalMachine


class VMTargetSchema(BaseModel):
    """
    Identifies one VM on a connected host, by UUID or by name.
    """

    host: PhysicalMachine
    vm_id: Optional[UUID] = None
    vm_name: Optional[str] = None

    @model_validator(mode="after")
    def _id_or_name(self):
        if self.vm_id is None and not (self.vm_name and self.vm_name.strip()):
            raise ValueError("either vm_id or vm_name must be given")
        return self


class CloneSchema(VMTargetSchema):
    clone_type: CloneType = CloneType.FULL
    clone_name: Optional[str] = Field(
        default=None,
        description="Name of the clone, '<name>_clone' when omitted",
    )


class RegisterSchema(HostSchema):
    domain_xml: str = Field(..., description="libvirt domain XML of the VM")


class PortRuleAddSchema(VMTargetSchema):
    rule: PortRule


class PortRuleDeleteSchema(VMTargetSchema):
    rule_name: Optional[str] = Field(
        default=None,
        description="Rule to delete, all rules of the VM when omitted",
    )


class SearchSchema(BaseModel):
    """
    Search request.

    'max_deviation' overrides the service-wide deviation for this search only.
    """

    criteria: SearchCriteria
    mode: SearchMode
    order: Optional[List[Optional[SearchCriterionType]]] = None
    max_deviation: Optional[int] = None
