from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Renter(Base):
    __tablename__ = "Renters"

    RenterID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    EntityName = Column(String(255), nullable=False)
    PocName = Column(String(255), nullable=False)
    PhoneNumber = Column(String(20), nullable=False)
    Location = Column(String(255), nullable=False)
    ProfileImagePath = Column(String(500))
    PasswordHash = Column(String(256), nullable=False)
    PasswordSalt = Column(String(64), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    Listings = relationship("RentalListing", back_populates="Renter")
    Sessions = relationship("RenterSession", back_populates="Renter", cascade="all, delete-orphan")


class RenterSession(Base):
    __tablename__ = "RenterSessions"

    SessionID = Column(String(64), primary_key=True)
    RenterID = Column(Integer, ForeignKey("Renters.RenterID"), nullable=False)
    ExpiresAt = Column(DateTime, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    Renter = relationship("Renter", back_populates="Sessions")


class RentalListing(Base):
    __tablename__ = "RentalListings"
    __table_args__ = (
        CheckConstraint("Stock >= 0", name="ck_listing_stock_non_negative"),
        CheckConstraint("Rented >= 0 AND Rented <= Stock", name="ck_listing_rented_within_stock"),
    )

    ListingID = Column(Integer, primary_key=True)
    RenterID = Column(Integer, ForeignKey("Renters.RenterID"), nullable=False, index=True)
    Category = Column(String(50), nullable=False, index=True)
    Subcategory = Column(String(100))
    Brand = Column(String(255), nullable=False)
    Model = Column(String(255), nullable=False)
    PricePerHour = Column(Numeric(10, 2), nullable=False, default=0)
    Stock = Column(Integer, nullable=False)
    Rented = Column(Integer, nullable=False, default=0)
    DeliveryStatus = Column(String(20), nullable=False, default="Pending")
    ImagePaths = Column(String(2000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Renter = relationship("Renter", back_populates="Listings")
    Requests = relationship("RentalRequest", back_populates="Listing")


class RentalRequest(Base):
    __tablename__ = "RentalRequests"

    RequestID = Column(Integer, primary_key=True)
    ListingID = Column(Integer, ForeignKey("RentalListings.ListingID"), nullable=False, index=True)
    CustomerName = Column(String(255), nullable=False)
    ContactNumber = Column(String(20), nullable=False)
    IdentityDocumentPath = Column(String(500), nullable=False)
    Quantity = Column(Integer, nullable=False)
    DurationHours = Column(Integer, nullable=False)
    PricePerHour = Column(Numeric(10, 2), nullable=False)
    TotalPrice = Column(Numeric(12, 2), nullable=False)
    Status = Column(String(20), nullable=False, default="Pending")
    IdempotencyKey = Column(String(128), unique=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Listing = relationship("RentalListing", back_populates="Requests")


class CustomerInfo(Base):
    __tablename__ = "CustomerInfo"

    CustomerInfoID = Column(Integer, primary_key=True)
    GovernmentIdNumber = Column(String(12), nullable=False, unique=True)
    Name = Column(String(255), nullable=False)
    ContactNumber = Column(String(20), nullable=False)
    Location = Column(String(255), nullable=False)
    DocumentPath = Column(String(500), nullable=False)
    VerificationStatus = Column(String(40), nullable=False)
    SubmittedBy = Column(Integer, ForeignKey("Renters.RenterID"))
    CreatedDate = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    RenterID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    NotificationType = Column(String(50), nullable=False)
    EntityID = Column(Integer)
    RenterID = Column(Integer, index=True)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
