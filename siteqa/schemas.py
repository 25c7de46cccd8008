from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

# --- NCR ---
Severity = Literal["low", "medium", "high", "critical"]


class NcrCreateIn(BaseModel):
    project_id: int = Field(..., ge=1)
    lot_id: Optional[int] = Field(default=None, ge=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=8000)
    severity: Severity = "medium"
    assigned_to: Optional[int] = Field(default=None, ge=1)
    contractor_id: Optional[int] = Field(default=None, ge=1)


class NcrNoteIn(BaseModel):
    note: Optional[str] = Field(default=None, max_length=2000)


# Types and lengths are checked by the workflow so every problem is reported at once.
class NcrResolveIn(NcrNoteIn):
    root_cause: Optional[Any] = None
    corrective_action: Optional[Any] = None
    preventive_action: Optional[Any] = None
    actual_cost: Optional[Any] = None


class NcrDisputeIn(NcrNoteIn):
    dispute_reason: Optional[Any] = None
    dispute_category: Optional[Any] = None


class NcrReopenIn(NcrNoteIn):
    reopened_reason: Optional[Any] = None


class NcrAssignIn(BaseModel):
    assigned_to: Optional[int] = Field(default=None, ge=1)
    contractor_id: Optional[int] = Field(default=None, ge=1)


# --- ITP ---
ItemStatus = Literal["pass", "fail", "na"]
InspectionStatus = Literal["draft", "in_progress", "completed", "approved", "rejected"]


class ItpItemUpdateIn(BaseModel):
    itemId: str = Field(..., min_length=1, max_length=200)
    status: ItemStatus
    notes: Optional[str] = Field(default=None, max_length=4000)


class ItpInstanceUpdateIn(BaseModel):
    instanceId: Union[int, str]
    updates: List[ItpItemUpdateIn]


class ItpBatchUpdateIn(BaseModel):
    updates: List[ItpInstanceUpdateIn] = Field(..., min_length=1)


class ItpInstancePatchIn(BaseModel):
    updates: List[ItpItemUpdateIn] = Field(default_factory=list)
    inspection_status: Optional[InspectionStatus] = None


class ItpTemplateItemIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=100, pattern=r"^[^-]+$")
    label: str = Field(..., min_length=1, max_length=300)
    required: bool = True


class ItpTemplateSectionIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=100, pattern=r"^[^-]+$")
    title: str = Field(..., min_length=1, max_length=200)
    items: List[ItpTemplateItemIn] = Field(default_factory=list)


class ItpTemplateCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    sections: List[ItpTemplateSectionIn] = Field(default_factory=list)

    def structure(self) -> Dict[str, Any]:
        return {"sections": [s.model_dump() for s in self.sections]}


class ItpAssignIn(BaseModel):
    templateIds: List[int] = Field(..., min_length=1)
    lotId: int = Field(..., ge=1)
    projectId: int = Field(..., ge=1)
