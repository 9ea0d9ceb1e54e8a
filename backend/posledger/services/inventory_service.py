# Overview: Product stock counter and append-only stock movement log.

"""
Stock Movements

WHY: Sales take units out of stock and returns put them back. The product row
holds the running stock_quantity; every change is also written to
stock_movements so the counter can always be explained.

MOVEMENT TYPES: in, out, adjustment, damage (quantity is always positive;
the type carries the direction).
"""

from __future__ import annotations

from typing import Optional

from flask import current_app

from ..errors import InsufficientStock, InvalidAmount, ProductNotFound, ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from .concurrency import lock_for_update, run_with_retry


MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_DAMAGE = "damage"

MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUSTMENT, MOVEMENT_DAMAGE)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)
    return product


def lock_product(product_id: int) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if not product:
        raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)
    return product


def create_product(
    *,
    sku: str,
    name: str,
    price_cents: int,
    stock_quantity: int = 0,
) -> Product:
    """Catalog stand-in: create a product with opening stock (commits)."""
    if not sku or not name:
        raise ValidationError("sku and name are required", field="sku")
    if price_cents < 0:
        raise InvalidAmount("price_cents cannot be negative", field="price_cents")
    if stock_quantity < 0:
        raise ValidationError("stock_quantity cannot be negative", field="stock_quantity")

    def _op() -> Product:
        product = Product(
            sku=sku,
            name=name,
            price_cents=price_cents,
            stock_quantity=0,
            is_active=True,
        )
        db.session.add(product)
        db.session.flush()
        if stock_quantity:
            _apply_movement(
                product,
                movement_type=MOVEMENT_ADJUSTMENT,
                delta=stock_quantity,
                reference_type="adjustment",
                reference_id=None,
                notes="Opening stock",
            )
        db.session.commit()
        return product

    return run_with_retry(_op)


# =============================================================================
# MOVEMENTS (no commit; run inside the sale / return transaction)
# =============================================================================

def _apply_movement(
    product: Product,
    *,
    movement_type: str,
    delta: int,
    reference_type: Optional[str],
    reference_id: Optional[int],
    notes: Optional[str] = None,
) -> StockMovement:
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"movement_type must be one of {list(MOVEMENT_TYPES)}", field="movement_type")
    if delta == 0:
        raise ValidationError("Stock movement quantity must be non-zero", field="quantity")

    product.stock_quantity += delta
    movement = StockMovement(
        product_id=product.id,
        movement_type=movement_type,
        quantity=abs(delta),
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
    )
    db.session.add(movement)
    return movement


def remove_stock_for_sale(product: Product, quantity: int, *, sale_id: int) -> StockMovement:
    """Decrement stock for a sale line. Caller holds the product row lock."""
    if quantity <= 0:
        raise ValidationError("quantity must be positive", field="quantity")
    if product.stock_quantity < quantity:
        raise InsufficientStock(
            f"Insufficient stock for {product.sku}",
            product_id=product.id,
            available=product.stock_quantity,
            requested=quantity,
        )
    return _apply_movement(
        product,
        movement_type=MOVEMENT_OUT,
        delta=-quantity,
        reference_type="sale",
        reference_id=sale_id,
        notes=f"Sale {sale_id}",
    )


def restock_from_return(
    product: Product,
    quantity: int,
    *,
    return_id: int,
    condition: str = "good",
) -> StockMovement:
    """Put returned units back into stock (movement `in`, reference `return`)."""
    if quantity <= 0:
        raise ValidationError("quantity must be positive", field="quantity")
    return _apply_movement(
        product,
        movement_type=MOVEMENT_IN,
        delta=quantity,
        reference_type="return",
        reference_id=return_id,
        notes=f"Return {return_id} ({condition})",
    )


def get_stock_movements(product_id: int, limit: int = 100) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.movement_date.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def adjust_stock(product_id: int, delta: int, *, notes: Optional[str] = None) -> Product:
    """Manual stock correction (commits)."""
    if delta == 0:
        raise ValidationError("delta must be non-zero", field="delta")

    def _op() -> Product:
        product = lock_product(product_id)
        if product.stock_quantity + delta < 0:
            raise InsufficientStock(
                f"Adjustment would make stock negative for {product.sku}",
                product_id=product.id,
                available=product.stock_quantity,
                requested=-delta,
            )
        _apply_movement(
            product,
            movement_type=MOVEMENT_ADJUSTMENT,
            delta=delta,
            reference_type="adjustment",
            reference_id=None,
            notes=notes,
        )
        db.session.commit()
        current_app.logger.info("Adjusted stock for product %d by %d", product_id, delta)
        return product

    return run_with_retry(_op)
