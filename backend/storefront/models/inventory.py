from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


MOVEMENT_TYPES = ("restock", "sale", "adjustment", "return")


class InventoryMovement(db.Model):
    """
    Append-only ledger of stock changes for a variant.

    quantity_change is the delta actually applied to stock_quantity.
    requested_change is what the caller asked for; the two differ only when
    a decrement was clamped at zero (an oversell).

    IMMUTABLE: Records are never updated or deleted. Compensations are new
    rows pointing back through reverses_movement_id.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_movements_variant_created", "variant_id", "created_at"),
        db.Index("ix_movements_order_item", "order_id", "order_item_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)  # restock, sale, adjustment, return
    quantity_change = db.Column(db.Integer, nullable=False)
    requested_change = db.Column(db.Integer, nullable=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=True)
    reverses_movement_id = db.Column(db.Integer, db.ForeignKey("inventory_movements.id"), nullable=True, unique=True)

    note = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    variant = db.relationship("ProductVariant", backref=db.backref("movements", lazy=True))

    @property
    def oversold_units(self) -> int:
        return abs(self.requested_change) - abs(self.quantity_change)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "movement_type": self.movement_type,
            "quantity_change": self.quantity_change,
            "requested_change": self.requested_change,
            "oversold_units": self.oversold_units,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "reverses_movement_id": self.reverses_movement_id,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
