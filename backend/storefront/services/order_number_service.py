# Overview: Human-readable order numbers of the form ORD-YYYYMMDD-NNNN.

from __future__ import annotations

import random
from datetime import datetime

from ..extensions import db
from ..models import Order
from storefront.time_utils import utcnow

_system_random = random.SystemRandom()


def generate_order_number(now: datetime | None = None, rng: random.Random | None = None) -> str:
    """
    Build a candidate order number.

    Not guaranteed unique: the orders table carries a unique constraint and
    the checkout retries with a fresh candidate on conflict.
    """
    now = now or utcnow()
    rng = rng or _system_random
    return f"ORD-{now:%Y%m%d}-{rng.randrange(10_000):04d}"


def order_number_taken(order_number: str) -> bool:
    return db.session.query(Order.id).filter_by(order_number=order_number).first() is not None
