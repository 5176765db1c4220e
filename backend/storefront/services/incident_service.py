# Overview: Service-layer operations for checkout incidents (partial-persistence audit trail).

from __future__ import annotations

import json
import logging

from ..extensions import db
from ..models import CheckoutIncident
from storefront.time_utils import utcnow

logger = logging.getLogger(__name__)


def record_incident(
    *,
    store_id: int,
    stage: str,
    error: BaseException | str,
    order_id: int | None = None,
    details: dict | None = None,
    resolution: str | None = None,
) -> CheckoutIncident:
    """
    Write a checkout incident in its own transaction.

    Callers have already rolled back whatever failed; this commit must not
    depend on it. Passing resolution marks the incident resolved on creation
    (e.g., when the checkout compensated itself).
    """
    if isinstance(error, BaseException):
        error_type = type(error).__name__
        message = str(error)
    else:
        error_type = "Inconsistency"
        message = error

    incident = CheckoutIncident(
        store_id=store_id,
        order_id=order_id,
        stage=stage,
        error_type=error_type,
        message=(message or "")[:512],
        details=json.dumps(details, default=str) if details else None,
        resolved_at=utcnow() if resolution else None,
        resolution=resolution,
    )
    db.session.add(incident)
    db.session.commit()

    logger.error(
        "Checkout incident %s: order_id=%s stage=%s %s: %s",
        incident.id, order_id, stage, error_type, message,
    )
    return incident


def list_open_incidents(store_id: int | None = None, limit: int = 200) -> list[CheckoutIncident]:
    q = db.session.query(CheckoutIncident).filter(CheckoutIncident.resolved_at.is_(None))
    if store_id is not None:
        q = q.filter(CheckoutIncident.store_id == store_id)
    return q.order_by(CheckoutIncident.created_at.asc(), CheckoutIncident.id.asc()).limit(limit).all()


def resolve_incidents(order_id: int, resolution: str) -> int:
    """Mark every open incident of an order resolved. Does not commit."""
    incidents = (
        db.session.query(CheckoutIncident)
        .filter(CheckoutIncident.order_id == order_id, CheckoutIncident.resolved_at.is_(None))
        .all()
    )
    now = utcnow()
    for incident in incidents:
        incident.resolved_at = now
        incident.resolution = resolution
    return len(incidents)
