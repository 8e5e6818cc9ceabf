from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class InventoryItem(Base):
    __tablename__ = "InventoryItems"

    ItemID = Column(Integer, primary_key=True)
    ItemName = Column(String(255), nullable=False)
    # Plain string, not a foreign key: renaming a category rewrites these values.
    Category = Column(String(100), nullable=False, index=True)
    ImageUrl = Column(String(1000))
    TotalQty = Column(Integer, nullable=False, default=1)
    RentedQty = Column(Integer, nullable=False, default=0)
    BrokenQty = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("RentalRecord", back_populates="Item")


class Category(Base):
    __tablename__ = "Categories"

    CategoryID = Column(Integer, primary_key=True)
    CategoryName = Column(String(100), nullable=False, unique=True)
    CreatedDate = Column(DateTime, server_default=func.now())


class Profile(Base):
    __tablename__ = "Profiles"

    ProfileID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    FullName = Column(String(255), nullable=False)
    Role = Column(String(20), nullable=False, default="waiting")
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    CreatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("RentalRecord", back_populates="Holder")


class RentalRecord(Base):
    __tablename__ = "Rentals"

    RentalID = Column(Integer, primary_key=True)
    ProfileID = Column(Integer, ForeignKey("Profiles.ProfileID"), nullable=False, index=True)
    ItemID = Column(Integer, ForeignKey("InventoryItems.ItemID"), index=True)
    ItemName = Column(String(255))
    CurrentRentedQty = Column(Integer, nullable=False)
    DueDate = Column(Date, nullable=False)
    Status = Column(String(20), nullable=False, default="active", index=True)
    BrokenLog = Column(Integer, nullable=False, default=0)
    ReturnProofUrl = Column(String(1000))
    Revision = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("InventoryItem", back_populates="Rentals")
    Holder = relationship("Profile", back_populates="Rentals")


class CategoryFavorite(Base):
    __tablename__ = "CategoryFavorites"
    __table_args__ = (UniqueConstraint("ProfileID", "CategoryName", name="uq_favorite_profile_category"),)

    FavoriteID = Column(Integer, primary_key=True)
    ProfileID = Column(Integer, ForeignKey("Profiles.ProfileID"), nullable=False, index=True)
    CategoryName = Column(String(100), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
