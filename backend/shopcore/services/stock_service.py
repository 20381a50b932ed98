"""
Stock ledger.

WHY: Variant stock is the sum of its stock_movements. ProductVariant.stock is
a cached projection of that sum; record_movement() is the only writer and
changes both in one transaction, so the two can never drift apart.

DESIGN PRINCIPLES:
- Append-only: movements are never updated or deleted
- No negative-stock guard: over-sell prevention happens at checkout, the
  ledger records what actually happened
- No deduplication: callers guard against recording the same event twice
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..extensions import db
from ..models import Product, ProductVariant, StockMovement
from ..models.inventory import MOVEMENT_TYPES
from .concurrency import lock_for_update, run_with_retry
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _validate_movement(quantity, movement_type: str) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if quantity == 0:
        raise ValidationError("quantity must be non-zero")
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(MOVEMENT_TYPES)}")
    return quantity


def _record_movement_inner(
    *,
    variant_id: int,
    quantity: int,
    movement_type: str,
    reason: str | None,
    actor_id: int | None,
) -> StockMovement:
    """Lock the variant, append the movement and move the counter. No commit."""
    variant = lock_for_update(
        db.session.query(ProductVariant).filter_by(id=variant_id)
    ).first()
    if variant is None:
        raise NotFoundError(f"Variant {variant_id} not found", {"variant_id": variant_id})

    movement = StockMovement(
        variant_id=variant.id,
        quantity=quantity,
        type=movement_type,
        reason=reason,
        created_by=actor_id,
    )
    db.session.add(movement)
    variant.stock = (variant.stock or 0) + quantity
    db.session.flush()
    return movement


def record_movement(
    variant_id: int,
    quantity: int,
    movement_type: str,
    *,
    reason: str | None = None,
    actor_id: int | None = None,
    commit: bool = True,
) -> StockMovement:
    """
    Append a signed stock movement and update the variant counter atomically.

    With commit=False the caller owns the transaction (and its retry); used
    when the movement must land together with another row, e.g. a return
    line's completion link.

    Raises:
        ValidationError: zero/non-integer quantity or unknown type
        NotFoundError: variant does not exist
    """
    quantity = _validate_movement(quantity, movement_type)

    if not commit:
        return _record_movement_inner(
            variant_id=variant_id,
            quantity=quantity,
            movement_type=movement_type,
            reason=reason,
            actor_id=actor_id,
        )

    def _op():
        movement = _record_movement_inner(
            variant_id=variant_id,
            quantity=quantity,
            movement_type=movement_type,
            reason=reason,
            actor_id=actor_id,
        )
        db.session.commit()
        return movement

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


def default_variant_for(product_id: int) -> ProductVariant | None:
    """First variant of a product (lowest id), used when a cart line has none."""
    return (
        db.session.query(ProductVariant)
        .filter_by(product_id=product_id)
        .order_by(ProductVariant.id.asc())
        .first()
    )


def decrement_legacy_product_stock(product_id: int, quantity: int) -> Product:
    """
    Direct decrement of Product.stock for simple products without variants.

    No ledger row exists for this path; it is logged so the gap is visible.
    """
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})
        product.stock = (product.stock or 0) - quantity
        db.session.commit()
        return product

    try:
        product = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
    logger.info("Legacy stock decrement: product_id=%s quantity=%s", product_id, quantity)
    return product


# =============================================================================
# RECONCILIATION
# =============================================================================

def get_ledger_stock(variant_id: int) -> int:
    """Stock as derived from the ledger: SUM(quantity) over the variant's movements."""
    total = (
        db.session.query(func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.variant_id == variant_id)
        .scalar()
    )
    return int(total or 0)


def list_movements(variant_id: int, *, limit: int = 200) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(variant_id=variant_id)
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def verify_stock_counters() -> list[dict]:
    """Variants whose cached counter disagrees with the ledger sum."""
    ledger = (
        db.session.query(
            StockMovement.variant_id,
            func.sum(StockMovement.quantity).label("total"),
        )
        .group_by(StockMovement.variant_id)
        .subquery()
    )
    rows = (
        db.session.query(ProductVariant.id, ProductVariant.stock, func.coalesce(ledger.c.total, 0))
        .outerjoin(ledger, ledger.c.variant_id == ProductVariant.id)
        .order_by(ProductVariant.id.asc())
        .all()
    )
    return [
        {"variant_id": vid, "cached_stock": int(cached or 0), "ledger_stock": int(total)}
        for vid, cached, total in rows
        if int(cached or 0) != int(total)
    ]


def rebuild_stock_counter(variant_id: int) -> ProductVariant:
    """Overwrite the cached counter with the ledger sum."""
    def _op():
        variant = lock_for_update(
            db.session.query(ProductVariant).filter_by(id=variant_id)
        ).first()
        if variant is None:
            raise NotFoundError(f"Variant {variant_id} not found", {"variant_id": variant_id})
        previous = variant.stock
        variant.stock = get_ledger_stock(variant_id)
        db.session.commit()
        if previous != variant.stock:
            logger.warning(
                "Stock counter rebuilt: variant_id=%s cached=%s ledger=%s",
                variant_id, previous, variant.stock,
            )
        return variant

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
