from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.checkout_models import CategoryFavorite
from services.errors import PlatformError, ValidationError


LOGGER = logging.getLogger("equipment_checkout.favorites")

MAX_FAVORITES = 2


def _favorite_rows(db: Session, profile_id: int) -> list[CategoryFavorite]:
    stmt = (
        select(CategoryFavorite)
        .where(CategoryFavorite.ProfileID == profile_id)
        .order_by(CategoryFavorite.CreatedDate, CategoryFavorite.FavoriteID)
    )
    return list(db.execute(stmt).scalars().all())


def list_favorites(db: Session, profile_id: int) -> list[str]:
    return [row.CategoryName for row in _favorite_rows(db, profile_id)]


def toggle_favorite(db: Session, profile_id: int, category_name: str | None) -> dict:
    """Pin or unpin a category; pinning a third one drops the oldest pin."""
    name = (category_name or "").strip()
    if not name:
        raise ValidationError("Category name is required.")

    rows = _favorite_rows(db, profile_id)
    existing = next((row for row in rows if row.CategoryName == name), None)
    evicted: str | None = None
    try:
        if existing:
            db.execute(delete(CategoryFavorite).where(CategoryFavorite.FavoriteID == existing.FavoriteID))
            added = False
        else:
            overflow = len(rows) - MAX_FAVORITES + 1
            for oldest in rows[: max(overflow, 0)]:
                db.execute(delete(CategoryFavorite).where(CategoryFavorite.FavoriteID == oldest.FavoriteID))
                evicted = oldest.CategoryName
            db.add(CategoryFavorite(ProfileID=profile_id, CategoryName=name, CreatedDate=datetime.now()))
            added = True
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PlatformError("Could not update favorites.") from exc

    LOGGER.info("Favorite toggled profile_id=%s category=%s added=%s evicted=%s", profile_id, name, added, evicted)
    return {
        "category": name,
        "added": added,
        "evicted": evicted,
        "favorites": list_favorites(db, profile_id),
    }
