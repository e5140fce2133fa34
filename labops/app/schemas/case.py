"""
Lab case schemas.
"""

from pydantic import BaseModel, Field
from labops.app.core.clock import UtcDateTime
from typing import Any, Dict, List, Optional


class CaseUpdate(BaseModel):
    """
    Case update request.
    
    expected_version is the version the caller read; the update is rejected
    if the stored version has moved on.
    """
    expected_version: int = Field(..., ge=0)
    status: Optional[str] = None
    clinic_id: Optional[str] = None
    patient_name: Optional[str] = None
    unit_ids: Optional[List[str]] = None
    attributes: Optional[Dict[str, Any]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"expected_version"}, exclude_unset=True)


class CaseResponse(BaseModel):
    """Case as returned to callers."""
    id: str
    lab_id: str
    clinic_id: Optional[str] = None
    case_number: Optional[str] = None
    patient_name: Optional[str] = None
    status: str
    unit_ids: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    version: int
    updated_by: Optional[str] = None
    updated_at: Optional[UtcDateTime] = None

    class Config:
        from_attributes = True
