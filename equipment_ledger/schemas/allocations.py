from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

ShowStatus = Literal["requested", "allocated", "checked-out", "in-use", "returned"]
LocationStatus = Literal["allocated", "in-use", "maintenance", "reserved"]


class ShowAllocationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantityNeeded: int = 1
    notes: Optional[str] = None
    userID: Optional[int] = None


class ShowAllocationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantityNeeded: Optional[int] = None
    quantityAllocated: Optional[int] = None
    status: Optional[ShowStatus] = None
    notes: Optional[str] = None
    expectedVersion: Optional[int] = None
    userID: Optional[int] = None


class StatusChangePreview(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: ShowStatus
    quantity: Optional[int] = None


class LocationAllocationItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    locationID: Optional[int] = None
    locationName: Optional[str] = None
    quantity: int = 1
    status: LocationStatus = "allocated"
    notes: Optional[str] = None


class ReplaceLocationAllocationsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    allocations: List[LocationAllocationItem] = []
    userID: Optional[int] = None


class PlanLocationRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    locationID: Optional[int] = None
    locationName: Optional[str] = None


class RedistributionPlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mode: Literal["split-equal", "move-all"]
    locations: List[PlanLocationRef] = []


class MoveLocationAllocationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    locationID: Optional[int] = None
    locationName: Optional[str] = None
    quantity: Optional[int] = None
    userID: Optional[int] = None


class LocationAllocationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    locationID: Optional[int] = None
    locationName: Optional[str] = None
    quantity: int = 1
    status: LocationStatus = "allocated"
    notes: Optional[str] = None
    userID: Optional[int] = None
