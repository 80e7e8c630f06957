"""Inventory visibility gate.

``Product.is_visible`` is the only signal catalog listings use to decide
whether a product is offered. Checkout hides every product an order
references; the payment-failure cascade shows them again. It is a coarse
reservation flag, not a stock counter: a product with stock > 1 disappears
as soon as one unit is ordered.

Both writes run inside the caller's transaction and never commit.
"""

from typing import Iterable, List

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from .models import Product

logger = structlog.get_logger(__name__)


class VisibilityGate:
    def hide(self, db: Session, product_ids: Iterable[int]) -> int:
        return self._set_visible(db, product_ids, False)

    def restore(self, db: Session, product_ids: Iterable[int]) -> int:
        return self._set_visible(db, product_ids, True)

    def _set_visible(self, db: Session, product_ids: Iterable[int], visible: bool) -> int:
        ids: List[int] = sorted({int(pid) for pid in product_ids})
        if not ids:
            return 0
        result = db.execute(
            update(Product)
            .where(Product.id.in_(ids))
            .values(is_visible=visible)
            .execution_options(synchronize_session="fetch")
        )
        logger.debug("product_visibility_changed", product_ids=ids, visible=visible)
        return int(result.rowcount or 0)


visibility_gate = VisibilityGate()
