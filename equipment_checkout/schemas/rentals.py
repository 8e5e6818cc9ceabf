from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CartLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    quantity: int = 1
    dueDate: Optional[date] = None


class CartCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: List[CartLineDto] = []


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnQty: int
    brokenQty: int = 0
    proofUrl: Optional[str] = None
    proofDataUrl: Optional[str] = None
    expectedRevision: Optional[int] = None


class ForceReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    broken: bool = False
    expectedRevision: Optional[int] = None
