from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from . import models


def get_catalog_item(db: Session, item_id: Optional[str]) -> Optional[models.CatalogItem]:
    if not item_id:
        return None
    return db.get(models.CatalogItem, item_id)


def count_open_po_lines(db: Session, location_id: int) -> int:
    return (
        db.query(models.PurchaseOrderLine)
        .filter(
            models.PurchaseOrderLine.destination_location_id == location_id,
            models.PurchaseOrderLine.status == models.PurchaseOrderLineStatus.OPEN,
        )
        .count()
    )
