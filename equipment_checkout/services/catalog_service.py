from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.checkout_models import InventoryItem, RentalRecord
from services.errors import ConflictError, NotFoundError, PlatformError, ValidationError


LOGGER = logging.getLogger("equipment_checkout.catalog")

ALL_CATEGORIES = "all"
SORT_OPTIONS = {"name", "newest", "available"}


def available_qty(item: InventoryItem) -> int:
    return int(item.TotalQty or 0) - int(item.RentedQty or 0) - int(item.BrokenQty or 0)


def serialize_item(item: InventoryItem) -> dict:
    return {
        "itemID": item.ItemID,
        "name": item.ItemName,
        "category": item.Category,
        "imageUrl": item.ImageUrl,
        "totalQty": item.TotalQty,
        "rentedQty": item.RentedQty,
        "brokenQty": item.BrokenQty,
        "availableQty": available_qty(item),
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }


def _clean_text(value: Any) -> str:
    return str(value or "").strip()


def get_item(db: Session, item_id: int) -> InventoryItem:
    item = db.get(InventoryItem, item_id, populate_existing=True)
    if not item:
        raise NotFoundError("Item not found", itemID=item_id)
    return item


def create_item(
    db: Session,
    *,
    name: str | None,
    category: str | None,
    total_qty: int | None,
    image_url: str | None = None,
) -> InventoryItem:
    clean_name = _clean_text(name)
    clean_category = _clean_text(category)
    if not clean_name or not clean_category:
        raise ValidationError("Item name and category are required.")
    if total_qty is None or int(total_qty) < 1:
        raise ValidationError("totalQty must be at least 1.")

    now = datetime.now()
    item = InventoryItem(
        ItemName=clean_name,
        Category=clean_category,
        TotalQty=int(total_qty),
        RentedQty=0,
        BrokenQty=0,
        ImageUrl=image_url or None,
        CreatedDate=now,
        UpdatedDate=now,
    )
    try:
        db.add(item)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not save item.") from exc
    db.refresh(item)
    LOGGER.info("Item created item_id=%s name=%s total=%s", item.ItemID, item.ItemName, item.TotalQty)
    return item


def update_item(db: Session, item_id: int, patch: dict[str, Any]) -> InventoryItem:
    item = get_item(db, item_id)
    values: dict[str, Any] = {}

    if "name" in patch:
        clean_name = _clean_text(patch.get("name"))
        if not clean_name:
            raise ValidationError("Item name is required.")
        values["ItemName"] = clean_name
    if "category" in patch:
        clean_category = _clean_text(patch.get("category"))
        if not clean_category:
            raise ValidationError("Item category is required.")
        values["Category"] = clean_category
    if "imageUrl" in patch:
        values["ImageUrl"] = patch.get("imageUrl") or None

    new_total = patch.get("totalQty")
    if new_total is not None:
        new_total = int(new_total)
        if new_total < 1:
            raise ValidationError("totalQty must be at least 1.")
        values["TotalQty"] = new_total

    if not values:
        return item
    values["UpdatedDate"] = datetime.now()

    stmt = update(InventoryItem).where(InventoryItem.ItemID == item_id)
    if new_total is not None:
        # Units in circulation can never be removed from stock.
        stmt = stmt.where(InventoryItem.RentedQty + InventoryItem.BrokenQty <= new_total)
    try:
        result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount == 0:
            db.rollback()
            db.refresh(item)
            in_use = int(item.RentedQty or 0) + int(item.BrokenQty or 0)
            LOGGER.warning("Item update rejected item_id=%s total=%s in_use=%s", item_id, new_total, in_use)
            raise ConflictError(
                f"totalQty can not be lower than the {in_use} units currently rented or broken.",
                itemID=item_id,
                inUseQty=in_use,
            )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not update item.") from exc
    db.refresh(item)
    LOGGER.info("Item updated item_id=%s fields=%s", item_id, ",".join(sorted(values)))
    return item


def delete_item(db: Session, item_id: int) -> None:
    item = get_item(db, item_id)
    has_active = db.execute(
        select(
            exists().where(RentalRecord.ItemID == item_id).where(RentalRecord.Status == "active")
        )
    ).scalar()
    if has_active:
        LOGGER.warning("Item delete rejected item_id=%s reason=active_rentals", item_id)
        raise ConflictError("Item has active rentals and can not be deleted.", itemID=item_id)

    try:
        # Closed records keep their item name snapshot for the history views.
        db.execute(
            update(RentalRecord)
            .where(RentalRecord.ItemID == item_id)
            .values(ItemID=None)
            .execution_options(synchronize_session=False)
        )
        db.delete(item)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not delete item.") from exc
    LOGGER.info("Item deleted item_id=%s", item_id)


def list_items(
    db: Session,
    *,
    category: str | None = None,
    search: str | None = None,
    sort: str | None = None,
) -> list[InventoryItem]:
    sort_key = (sort or "newest").strip().lower()
    if sort_key not in SORT_OPTIONS:
        raise ValidationError(f"sort must be one of {', '.join(sorted(SORT_OPTIONS))}.")

    stmt = select(InventoryItem)
    selected = _clean_text(category)
    if selected and selected.lower() != ALL_CATEGORIES:
        stmt = stmt.where(InventoryItem.Category == selected)
    term = _clean_text(search).lower()
    if term:
        stmt = stmt.where(func.lower(InventoryItem.ItemName).contains(term, autoescape=True))

    if sort_key == "name":
        stmt = stmt.order_by(InventoryItem.ItemName, InventoryItem.ItemID)
    elif sort_key == "available":
        availability = InventoryItem.TotalQty - InventoryItem.RentedQty - InventoryItem.BrokenQty
        stmt = stmt.order_by(availability.desc(), InventoryItem.ItemID)
    else:
        stmt = stmt.order_by(InventoryItem.CreatedDate.desc(), InventoryItem.ItemID.desc())
    return list(db.execute(stmt).scalars().all())
