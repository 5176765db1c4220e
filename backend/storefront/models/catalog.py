from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Store(db.Model):
    """
    Store reference.

    Store CRUD lives outside this service; the row exists so orders, variants
    and loyalty accounts can be scoped and so each store can carry its own
    tax rate.
    """
    __tablename__ = "stores"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    # Basis points (1800 = 18% GST). NULL means use the configured default.
    tax_rate_bps = db.Column(db.Integer, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "tax_rate_bps": self.tax_rate_bps,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data (read-only from the checkout's point of view).

    Prices are stored in minor units. sale_price_cents, when set, overrides
    base_price_cents at the till.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    base_price_cents = db.Column(db.Integer, nullable=False)
    sale_price_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("products", lazy=True))

    @property
    def effective_price_cents(self) -> int:
        if self.sale_price_cents is not None:
            return self.sale_price_cents
        return self.base_price_cents

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "name": self.name,
            "base_price_cents": self.base_price_cents,
            "sale_price_cents": self.sale_price_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class ProductVariant(db.Model):
    """
    Sellable size/color configuration; the unit at which stock is tracked.

    INVARIANTS:
    - stock_quantity never goes negative (DB check constraint backs this up)
    - stock_quantity == opening_stock + SUM(inventory_movements.quantity_change)
    - stock_quantity is only mutated by inventory_service through single-row
      atomic UPDATE statements, never read-modify-write in Python
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_variants_stock_non_negative"),
        db.UniqueConstraint("product_id", "sku", name="uq_variants_product_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    color = db.Column(db.String(64), nullable=True)
    size = db.Column(db.String(32), nullable=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    # Starting point for ledger replay; set once when the variant is created
    opening_stock = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=True)
    price_adjustment_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("variants", lazy=True))

    def unit_price_cents(self) -> int:
        return self.product.effective_price_cents + (self.price_adjustment_cents or 0)

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} sku={self.sku!r} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "color": self.color,
            "size": self.size,
            "stock_quantity": self.stock_quantity,
            "opening_stock": self.opening_stock,
            "low_stock_threshold": self.low_stock_threshold,
            "price_adjustment_cents": self.price_adjustment_cents,
            "created_at": to_utc_z(self.created_at),
        }
