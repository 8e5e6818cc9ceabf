from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models.checkout_models import InventoryItem, RentalRecord
from services.catalog_service import available_qty
from services.errors import CheckoutError, ConflictError, NotFoundError, PlatformError, ValidationError


LOGGER = logging.getLogger("equipment_checkout.rentals")

ACTIVE = "active"
RETURNED = "returned"
UNKNOWN_HOLDER = "Unknown"
FORCED_RETURN_PROOF = {
    False: "Manager forced return (normal)",
    True: "Manager forced return (broken/lost)",
}


def days_until_due(due_date: date, today: date | None = None) -> int:
    current_date = today or date.today()
    return (due_date - current_date).days


def is_overdue(rental: RentalRecord, today: date | None = None) -> bool:
    if rental.Status != ACTIVE or not rental.DueDate:
        return False
    return rental.DueDate < (today or date.today())


def serialize_rental(rental: RentalRecord, today: date | None = None) -> dict:
    item = rental.Item
    holder = rental.Holder
    active = rental.Status == ACTIVE
    return {
        "rentalID": rental.RentalID,
        "profileID": rental.ProfileID,
        "itemID": rental.ItemID,
        "itemName": item.ItemName if item else rental.ItemName,
        "itemImageUrl": item.ImageUrl if item else None,
        "currentRentedQty": rental.CurrentRentedQty,
        "dueDate": rental.DueDate,
        "status": rental.Status,
        "brokenLog": rental.BrokenLog,
        "returnProofUrl": rental.ReturnProofUrl,
        "revision": rental.Revision,
        "createdDate": rental.CreatedDate,
        "updatedDate": rental.UpdatedDate,
        "daysUntilDue": days_until_due(rental.DueDate, today) if active and rental.DueDate else None,
        "isOverdue": is_overdue(rental, today),
        "holder": {
            "profileID": holder.ProfileID,
            "fullName": holder.FullName,
            "email": holder.Email,
        } if holder else None,
    }


def _as_positive_int(raw: Any, field_name: str, minimum: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be an integer.") from exc
    if value < minimum:
        raise ValidationError(f"{field_name} must be at least {minimum}.")
    return value


def _as_due_date(raw: Any) -> date:
    if raw is None or raw == "":
        raise ValidationError("dueDate is required.")
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        try:
            return date.fromisoformat(raw.strip())
        except ValueError as exc:
            raise ValidationError("dueDate must be a date in YYYY-MM-DD format.") from exc
    raise ValidationError("dueDate must be a date in YYYY-MM-DD format.")


def _rental_query():
    return (
        select(RentalRecord)
        .options(selectinload(RentalRecord.Item))
        .options(selectinload(RentalRecord.Holder))
    )


def get_rental(db: Session, rental_id: int) -> RentalRecord:
    stmt = (
        _rental_query()
        .where(RentalRecord.RentalID == rental_id)
        .execution_options(populate_existing=True)
    )
    rental = db.execute(stmt).scalars().first()
    if not rental:
        raise NotFoundError("Rental not found", rentalID=rental_id)
    return rental


def checkout(
    db: Session,
    *,
    holder_id: int,
    item_id: int,
    quantity: Any,
    due_date: date | str | None,
    today: date | None = None,
) -> RentalRecord:
    current_date = today or date.today()
    wanted = _as_positive_int(quantity, "quantity", 1)
    due = _as_due_date(due_date)
    if due < current_date:
        raise ValidationError("dueDate can not be in the past.")

    now = datetime.now()
    availability = InventoryItem.TotalQty - InventoryItem.RentedQty - InventoryItem.BrokenQty
    try:
        item = db.get(InventoryItem, item_id, populate_existing=True)
        if not item:
            raise NotFoundError("Item not found", itemID=item_id)

        # Check and increment in one statement; two carts can not both pass.
        result = db.execute(
            update(InventoryItem)
            .where(InventoryItem.ItemID == item_id)
            .where(availability >= wanted)
            .values(RentedQty=InventoryItem.RentedQty + wanted, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            db.refresh(item)
            LOGGER.warning(
                "Checkout rejected item_id=%s holder=%s wanted=%s available=%s",
                item_id,
                holder_id,
                wanted,
                available_qty(item),
            )
            raise ConflictError(
                f"Only {available_qty(item)} unit(s) of '{item.ItemName}' are available.",
                itemID=item_id,
                availableQty=available_qty(item),
                requestedQty=wanted,
            )

        rental = RentalRecord(
            ProfileID=holder_id,
            ItemID=item_id,
            ItemName=item.ItemName,
            CurrentRentedQty=wanted,
            DueDate=due,
            Status=ACTIVE,
            BrokenLog=0,
            Revision=0,
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(rental)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.exception("Checkout failed item_id=%s holder=%s", item_id, holder_id)
        raise PlatformError("Could not record the checkout.") from exc

    db.refresh(item)
    LOGGER.info(
        "Checkout rental_id=%s item_id=%s holder=%s qty=%s due=%s",
        rental.RentalID,
        item_id,
        holder_id,
        wanted,
        due,
    )
    return get_rental(db, rental.RentalID)


@dataclass
class CartCheckoutResult:
    succeeded: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if not self.failed:
            return "ok"
        if not self.succeeded:
            return "failed"
        return "partial"

    def to_payload(self) -> dict:
        return {
            "outcome": self.outcome,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


def checkout_cart(
    db: Session,
    *,
    holder_id: int,
    lines: Iterable[dict],
    today: date | None = None,
) -> CartCheckoutResult:
    """Check out every cart line on its own; one failing line never blocks the others."""
    result = CartCheckoutResult()
    for index, line in enumerate(lines):
        item_id = line.get("itemID")
        try:
            rental = checkout(
                db,
                holder_id=holder_id,
                item_id=item_id,
                quantity=line.get("quantity"),
                due_date=line.get("dueDate"),
                today=today,
            )
        except CheckoutError as exc:
            result.failed.append(
                {
                    "line": index,
                    "itemID": item_id,
                    "error": type(exc).__name__,
                    "detail": exc.message,
                }
            )
            continue
        result.succeeded.append({"line": index, "itemID": item_id, "rental": serialize_rental(rental, today)})

    if result.failed:
        LOGGER.warning(
            "Cart checkout holder=%s outcome=%s failed_lines=%s",
            holder_id,
            result.outcome,
            [entry["line"] for entry in result.failed],
        )
    return result


def check_returnable(
    rental: RentalRecord,
    *,
    return_qty: Any,
    broken_qty: Any = 0,
    expected_revision: int | None = None,
) -> tuple[int, int]:
    """Validate a return against the loaded rental; returns (returned, broken)."""
    rental_id = rental.RentalID
    returned = _as_positive_int(return_qty, "returnQty", 1)
    broken = _as_positive_int(broken_qty if broken_qty is not None else 0, "brokenQty", 0)
    if rental.Status != ACTIVE:
        raise ConflictError("Rental is already returned.", rentalID=rental_id)
    if returned > int(rental.CurrentRentedQty or 0):
        raise ValidationError(
            f"returnQty can not exceed the {rental.CurrentRentedQty} unit(s) still rented.",
            rentalID=rental_id,
        )
    if broken > returned:
        raise ValidationError("brokenQty can not exceed returnQty.", rentalID=rental_id)
    if expected_revision is not None and int(expected_revision) != int(rental.Revision or 0):
        raise ConflictError("Rental was changed by someone else; reload and try again.", rentalID=rental_id)
    if rental.ItemID is None:
        raise ConflictError("Rental is not linked to an item.", rentalID=rental_id)
    return returned, broken


def process_return(
    db: Session,
    rental_id: int,
    *,
    return_qty: Any,
    broken_qty: Any = 0,
    proof: str | None,
    expected_revision: int | None = None,
) -> RentalRecord:
    """Return part or all of a rental.

    The rental row and the item counters change in one transaction. Broken
    units move to the item's broken pool; the rest become available again
    because availability is derived from the counters.
    """
    rental = get_rental(db, rental_id)
    proof_ref = (proof or "").strip()
    if not proof_ref:
        raise ValidationError("A proof of return is required.")
    returned, broken = check_returnable(
        rental,
        return_qty=return_qty,
        broken_qty=broken_qty,
        expected_revision=expected_revision,
    )

    now = datetime.now()
    rental_stmt = (
        update(RentalRecord)
        .where(RentalRecord.RentalID == rental_id)
        .where(RentalRecord.Status == ACTIVE)
        .where(RentalRecord.CurrentRentedQty >= returned)
    )
    if expected_revision is not None:
        rental_stmt = rental_stmt.where(RentalRecord.Revision == int(expected_revision))
    # Status is assigned first so it is computed from the pre-return quantity.
    rental_stmt = rental_stmt.ordered_values(
        (RentalRecord.Status, case((RentalRecord.CurrentRentedQty == returned, RETURNED), else_=ACTIVE)),
        (RentalRecord.CurrentRentedQty, RentalRecord.CurrentRentedQty - returned),
        (RentalRecord.BrokenLog, RentalRecord.BrokenLog + broken),
        (RentalRecord.ReturnProofUrl, proof_ref),
        (RentalRecord.Revision, RentalRecord.Revision + 1),
        (RentalRecord.UpdatedDate, now),
    )

    try:
        changed = db.execute(rental_stmt.execution_options(synchronize_session=False))
        if changed.rowcount == 0:
            db.rollback()
            LOGGER.warning("Return rejected rental_id=%s reason=concurrent_change", rental_id)
            raise ConflictError("Rental was changed by someone else; reload and try again.", rentalID=rental_id)

        counters = db.execute(
            update(InventoryItem)
            .where(InventoryItem.ItemID == rental.ItemID)
            .where(InventoryItem.RentedQty >= returned)
            .values(
                RentedQty=InventoryItem.RentedQty - returned,
                BrokenQty=InventoryItem.BrokenQty + broken,
                UpdatedDate=now,
            )
            .execution_options(synchronize_session=False)
        )
        if counters.rowcount == 0:
            db.rollback()
            LOGGER.error("Return rejected rental_id=%s item_id=%s reason=counter_mismatch", rental_id, rental.ItemID)
            raise ConflictError("Item counters do not cover this return.", rentalID=rental_id, itemID=rental.ItemID)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.exception("Return failed rental_id=%s", rental_id)
        raise PlatformError("Could not record the return.") from exc

    db.refresh(rental)
    if rental.Item is not None:
        db.refresh(rental.Item)
    LOGGER.info(
        "Return rental_id=%s item_id=%s returned=%s broken=%s status=%s",
        rental_id,
        rental.ItemID,
        returned,
        broken,
        rental.Status,
    )
    return rental


def force_return(
    db: Session,
    rental_id: int,
    *,
    broken: bool,
    expected_revision: int | None = None,
) -> RentalRecord:
    """Close a rental in full: all units back to stock, or all declared lost."""
    rental = get_rental(db, rental_id)
    if rental.Status != ACTIVE:
        raise ConflictError("Rental is already returned.", rentalID=rental_id)
    outstanding = int(rental.CurrentRentedQty or 0)
    revision = expected_revision if expected_revision is not None else int(rental.Revision or 0)
    return process_return(
        db,
        rental_id,
        return_qty=outstanding,
        broken_qty=outstanding if broken else 0,
        proof=FORCED_RETURN_PROOF[bool(broken)],
        expected_revision=revision,
    )


def list_active_rentals(db: Session) -> list[RentalRecord]:
    stmt = (
        _rental_query()
        .where(RentalRecord.Status == ACTIVE)
        .order_by(RentalRecord.DueDate, RentalRecord.RentalID)
    )
    return list(db.execute(stmt).scalars().all())


def list_overdue_rentals(db: Session, today: date | None = None) -> list[RentalRecord]:
    current_date = today or date.today()
    stmt = (
        _rental_query()
        .where(RentalRecord.Status == ACTIVE)
        .where(RentalRecord.DueDate < current_date)
        .order_by(RentalRecord.DueDate, RentalRecord.RentalID)
    )
    return list(db.execute(stmt).scalars().all())


def group_by_holder(rentals: Iterable[RentalRecord], today: date | None = None) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    for rental in rentals:
        holder_name = rental.Holder.FullName if rental.Holder and rental.Holder.FullName else UNKNOWN_HOLDER
        grouped.setdefault(holder_name, []).append(serialize_rental(rental, today))
    return grouped


def list_broken_history(db: Session) -> list[RentalRecord]:
    stmt = (
        _rental_query()
        .where(RentalRecord.BrokenLog > 0)
        .order_by(RentalRecord.UpdatedDate.desc(), RentalRecord.RentalID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def list_holder_rentals(db: Session, holder_id: int) -> list[RentalRecord]:
    stmt = (
        _rental_query()
        .where(RentalRecord.ProfileID == holder_id)
        .where(RentalRecord.Status == ACTIVE)
        .order_by(RentalRecord.CreatedDate.desc(), RentalRecord.RentalID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def count_holder_active(db: Session, holder_id: int) -> int:
    count = db.execute(
        select(func.count(RentalRecord.RentalID))
        .where(RentalRecord.ProfileID == holder_id)
        .where(RentalRecord.Status == ACTIVE)
    ).scalar()
    return int(count or 0)
