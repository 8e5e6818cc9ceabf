from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    category: str
    totalQty: int = 1
    imageUrl: Optional[str] = None
    imageDataUrl: Optional[str] = None


class UpdateItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    category: Optional[str] = None
    totalQty: Optional[int] = None
    imageUrl: Optional[str] = None


class CategoryDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str


class FavoriteToggleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    category: str
