from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.checkout_models import Category, InventoryItem
from services.errors import ConflictError, NotFoundError, PartialFailure, PlatformError, ValidationError


LOGGER = logging.getLogger("equipment_checkout.categories")


def serialize_category(category: Category) -> dict:
    return {
        "categoryID": category.CategoryID,
        "name": category.CategoryName,
        "createdDate": category.CreatedDate,
    }


def _clean_name(raw: str | None) -> str:
    name = (raw or "").strip()
    if not name:
        raise ValidationError("Category name is required.")
    return name


def _name_taken(db: Session, name: str, exclude_id: int | None = None) -> bool:
    stmt = select(Category.CategoryID).where(Category.CategoryName == name)
    if exclude_id is not None:
        stmt = stmt.where(Category.CategoryID != exclude_id)
    return db.execute(stmt).first() is not None


def list_categories(db: Session) -> list[Category]:
    return list(db.execute(select(Category).order_by(Category.CategoryID)).scalars().all())


def add_category(db: Session, name: str | None) -> Category:
    clean = _clean_name(name)
    if _name_taken(db, clean):
        raise ConflictError(f"Category '{clean}' already exists.")
    category = Category(CategoryName=clean)
    try:
        db.add(category)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(f"Category '{clean}' already exists.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not save category.") from exc
    db.refresh(category)
    LOGGER.info("Category added category_id=%s name=%s", category.CategoryID, clean)
    return category


def rename_category(db: Session, category_id: int, new_name: str | None) -> tuple[Category, int]:
    """Rename a category and retag every item carrying the old name.

    Both statements run in one transaction. If retagging fails after the
    category row was renamed, the rename is rolled back and reported as a
    PartialFailure. Returns the category and the number of retagged items.
    """
    category = db.get(Category, category_id)
    if not category:
        raise NotFoundError("Category not found", categoryID=category_id)
    clean = _clean_name(new_name)
    old_name = category.CategoryName
    if clean == old_name:
        return category, 0
    if _name_taken(db, clean, exclude_id=category_id):
        raise ConflictError(f"Category '{clean}' already exists.")

    try:
        db.execute(
            update(Category)
            .where(Category.CategoryID == category_id)
            .values(CategoryName=clean)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(f"Category '{clean}' already exists.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not rename category.") from exc

    try:
        result = db.execute(
            update(InventoryItem)
            .where(InventoryItem.Category == old_name)
            .values(Category=clean)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.exception("Category retag failed category_id=%s old=%s new=%s", category_id, old_name, clean)
        raise PartialFailure(
            "Category was renamed but its items could not be retagged; the rename was rolled back.",
            categoryID=category_id,
            completedSteps=["renameCategory"],
            failedStep="retagItems",
            rolledBack=True,
        ) from exc

    db.refresh(category)
    retagged = int(result.rowcount or 0)
    LOGGER.info("Category renamed category_id=%s old=%s new=%s retagged=%s", category_id, old_name, clean, retagged)
    return category, retagged


def remove_category(db: Session, category_id: int) -> None:
    category = db.get(Category, category_id)
    if not category:
        raise NotFoundError("Category not found", categoryID=category_id)
    try:
        db.delete(category)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not delete category.") from exc
    # Items keep the old string; it simply stops matching a registry entry.
    LOGGER.info("Category removed category_id=%s name=%s", category_id, category.CategoryName)
