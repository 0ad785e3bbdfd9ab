from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from equipment_cabinet.db.base import Base


class City(Base):
    __tablename__ = "Cities"

    CityID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    IsActive = Column(Boolean, default=True, nullable=False)
    RequestMode = Column(String(20), default="request", nullable=False)
    RequireCallID = Column(Boolean, default=False, nullable=False)
    MaxRequestDistanceKm = Column(Float)
    CabinetLat = Column(Float)
    CabinetLng = Column(Float)
    ManagerName = Column(String(255))
    ManagerEmail = Column(String(255))
    CreatedDate = Column(DateTime, server_default=func.now())

    Stock = relationship("CityEquipment", back_populates="City")
    Requests = relationship("EquipmentRequest", back_populates="City")


class GlobalEquipment(Base):
    __tablename__ = "GlobalEquipment"

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    CityStock = relationship("CityEquipment", back_populates="Equipment")


class CityEquipment(Base):
    __tablename__ = "CityEquipment"
    __table_args__ = (
        UniqueConstraint("CityID", "EquipmentID", name="uq_city_equipment"),
        CheckConstraint("Quantity >= 0", name="ck_city_equipment_quantity"),
    )

    CityEquipmentID = Column(Integer, primary_key=True)
    CityID = Column(Integer, ForeignKey("Cities.CityID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("GlobalEquipment.EquipmentID"), nullable=False)
    Quantity = Column(Integer, default=0, nullable=False)
    EquipmentStatus = Column(String(20), default="working", nullable=False)
    IsConsumable = Column(Boolean, default=False, nullable=False)
    MinQuantity = Column(Integer)
    UpdatedDate = Column(DateTime, server_default=func.now())

    City = relationship("City", back_populates="Stock")
    Equipment = relationship("GlobalEquipment", back_populates="CityStock")


class EquipmentRequest(Base):
    __tablename__ = "EquipmentRequests"

    RequestID = Column(Integer, primary_key=True)
    CityID = Column(Integer, ForeignKey("Cities.CityID"), nullable=False)
    RequesterName = Column(String(255), nullable=False)
    RequesterPhone = Column(String(50), nullable=False)
    CallID = Column(String(100))
    RequesterLat = Column(Float)
    RequesterLng = Column(Float)
    TokenHash = Column(String(64), nullable=False, unique=True, index=True)
    ExpiresAt = Column(DateTime, nullable=False)
    Status = Column(String(20), default="pending", nullable=False)
    RejectedReason = Column(String(500))
    ApprovedBy = Column(String(255))
    ApprovedAt = Column(DateTime)
    PickedUpAt = Column(DateTime)
    PickupSignature = Column(Text)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    City = relationship("City", back_populates="Requests")
    Items = relationship("RequestItem", back_populates="Request", cascade="all, delete-orphan")


class RequestItem(Base):
    __tablename__ = "RequestItems"
    __table_args__ = (CheckConstraint("Quantity >= 1", name="ck_request_item_quantity"),)

    RequestItemID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("EquipmentRequests.RequestID", ondelete="CASCADE"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("GlobalEquipment.EquipmentID"), nullable=False)
    Quantity = Column(Integer, default=1, nullable=False)

    Request = relationship("EquipmentRequest", back_populates="Items")
    Equipment = relationship("GlobalEquipment")


class BorrowRecord(Base):
    __tablename__ = "BorrowHistory"

    BorrowID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Phone = Column(String(50), nullable=False, index=True)
    EquipmentID = Column(Integer, ForeignKey("GlobalEquipment.EquipmentID"))
    EquipmentName = Column(String(255), nullable=False)
    CityID = Column(Integer, ForeignKey("Cities.CityID"), nullable=False)
    RequestID = Column(Integer)
    Quantity = Column(Integer, default=1, nullable=False)
    Status = Column(String(20), default="borrowed", nullable=False, index=True)
    BorrowDate = Column(DateTime, nullable=False)
    ReturnDate = Column(DateTime)
    LastReminderSentAt = Column(DateTime)
    EquipmentStatus = Column(String(20), default="working")
    FaultyNotes = Column(String(1000))


class ActivityLog(Base):
    __tablename__ = "ActivityLog"

    LogID = Column(Integer, primary_key=True)
    CityID = Column(Integer, nullable=False)
    ManagerName = Column(String(255), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
