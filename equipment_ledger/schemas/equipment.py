from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentName: str
    totalQuantity: int = 1
    userID: Optional[int] = None


class TotalQuantityUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    totalQuantity: int
    userID: Optional[int] = None


class ShowCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    showName: str
    startDate: Optional[date] = None
    endDate: Optional[date] = None


class LocationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    locationName: str
    description: Optional[str] = None


class InstallationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    installationType: Literal["portable", "semi-permanent", "fixed"]
    locationID: Optional[int] = None
    locationName: Optional[str] = None
    quantity: Optional[int] = None
    installationDate: Optional[date] = None
    notes: Optional[str] = None
    userID: Optional[int] = None


class InstallationReturn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: Optional[int] = None
    userID: Optional[int] = None
