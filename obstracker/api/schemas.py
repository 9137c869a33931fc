from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict

IntLike = Optional[Union[int, str]]


class ObservationForm(BaseModel):
    """Auditor create/edit form, field names as posted by the tracker panel."""
    year: IntLike = None
    quarter: Optional[str] = None
    month: Optional[str] = None
    companyName: Optional[str] = None
    region: Optional[str] = None
    auditName: Optional[str] = None
    auditReportDate: Optional[str] = None
    observationType: Optional[str] = None
    observation: Optional[str] = None
    details: Optional[str] = None
    riskRating: IntLike = None
    managementResponse: Optional[str] = None
    headOfDepartment: Optional[str] = None
    departmentResponsible: Optional[str] = None
    personResponsible: Optional[str] = None
    email: Optional[str] = None
    supportPerson: Optional[str] = None
    dueDate: Optional[str] = None
    daysOverdue: IntLike = None
    aging: IntLike = None
    agingTouched: bool = False
    status: IntLike = None
    dateClosed: Optional[str] = None
    closingRemarks: Optional[str] = None
    lastCommunicationDate: Optional[str] = None
    lastPersonCommunicated: Optional[str] = None
    iaWork: Optional[str] = None
    latestRevisedMap: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class AcceptResponseRequest(BaseModel):
    closing_remarks: str = ""


class RejectResponseRequest(BaseModel):
    reason: str = ""


class TrackerActionRequest(BaseModel):
    action: str
    observation_id: Optional[str] = None
    closing_remarks: Optional[str] = None
    reason: Optional[str] = None
    status: IntLike = None
    date_closed: Optional[str] = None
    # Listing context for the page, filter and export buttons.
    search: str = ""
    year: str = ""
    status_filter: str = ""
    risk: str = ""
    page: int = 1
    sort: str = "cr650_duedate"
    order: str = "desc"

    model_config = ConfigDict(extra="forbid")


class DashboardResponse(BaseModel):
    user: Dict[str, str]
    filters: Dict[str, str]
    notices: List[str]
    options: Dict[str, List[str]]
    statistics: Dict[str, int]
    count: int
    observations: List[Dict[str, Any]]

    model_config = ConfigDict(extra="allow")


class TrackerListResponse(BaseModel):
    filters: Dict[str, str]
    statistics: Dict[str, int]
    pagination: Dict[str, Any]
    observations: List[Dict[str, Any]]

    model_config = ConfigDict(extra="allow")


class ClientUpdateSubmitResponse(BaseModel):
    status: str
    observation_id: str
    update: Optional[Dict[str, Any]] = None
    warnings: List[str] = []
    redirect: Optional[str] = None

    model_config = ConfigDict(extra="allow")
