from __future__ import annotations

import json

from ..extensions import db
from storefront.time_utils import to_utc_z


class CheckoutIncident(db.Model):
    """
    Record of a checkout that stopped between durable steps.

    WHY: There is no cross-table rollback once a step has committed, so every
    partial failure is written down with the order and stage it hit. The
    reconciliation pass works from these rows and from order scans, and marks
    them resolved.

    STAGES: order_persisted, items_persisted, inventory_adjusted, loyalty_accrued,
    compensation
    """
    __tablename__ = "checkout_incidents"
    __table_args__ = (
        db.Index("ix_incidents_store_resolved", "store_id", "resolved_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    stage = db.Column(db.String(32), nullable=False, index=True)
    error_type = db.Column(db.String(128), nullable=False)
    message = db.Column(db.String(512), nullable=True)
    details = db.Column(db.Text, nullable=True)  # JSON

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_id": self.order_id,
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
            "details": json.loads(self.details) if self.details else None,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "resolution": self.resolution,
        }
