from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..db.base import Base


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    EquipmentName = Column(String(255))
    TotalQuantity = Column(Integer, nullable=False, default=1)
    Status = Column(String(50), default="available")
    InstallationType = Column(String(20), nullable=False, default="portable")
    InstallationQuantity = Column(Integer, nullable=False, default=0)
    InstallationLocationID = Column(Integer, ForeignKey("Locations.LocationID"))
    InstallationLocation = Column(String(255))
    InstallationDate = Column(Date)
    InstallationNotes = Column(String(1000))
    LedgerVersion = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    InstallationLocationRef = relationship("Location", foreign_keys=[InstallationLocationID])
    LocationAllocations = relationship("LocationAllocation", back_populates="Equipment")
    ShowAllocations = relationship("ShowAllocation", back_populates="Equipment")


class Location(Base):
    __tablename__ = "Locations"

    LocationID = Column(Integer, primary_key=True)
    LocationName = Column(String(255), nullable=False, unique=True)
    Description = Column(String(500))
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())


class Show(Base):
    __tablename__ = "Shows"

    ShowID = Column(Integer, primary_key=True)
    ShowName = Column(String(255), nullable=False)
    StartDate = Column(Date)
    EndDate = Column(Date)
    CreatedDate = Column(DateTime, server_default=func.now())

    ShowAllocations = relationship("ShowAllocation", back_populates="Show")


class LocationAllocation(Base):
    __tablename__ = "LocationAllocations"

    AllocationID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    LocationID = Column(Integer, ForeignKey("Locations.LocationID"))
    CustomLocation = Column(String(255))
    Quantity = Column(Integer, nullable=False, default=1)
    Status = Column(String(20), nullable=False, default="allocated")
    Notes = Column(String(1000))
    AllocatedBy = Column(Integer)
    AllocatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="LocationAllocations")
    Location = relationship("Location")


class ShowAllocation(Base):
    __tablename__ = "ShowAllocations"
    __table_args__ = (UniqueConstraint("ShowID", "EquipmentID", name="uq_show_equipment"),)

    AllocationID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    ShowID = Column(Integer, ForeignKey("Shows.ShowID"), nullable=False, index=True)
    QuantityNeeded = Column(Integer, nullable=False, default=1)
    QuantityAllocated = Column(Integer, nullable=False, default=0)
    Status = Column(String(20), nullable=False, default="requested")
    Notes = Column(String(1000))
    CheckoutDate = Column(DateTime)
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="ShowAllocations")
    Show = relationship("Show", back_populates="ShowAllocations")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
