from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order (root aggregate).

    Two status fields evolve independently:
    - fulfillment_status: warehouse/shipping lifecycle (see fulfillment_service)
    - payment_status: settlement state sourced from the gateway (see reconciliation_service)

    Every mutation appends exactly one OrderTimelineEntry. version_id is the
    optimistic concurrency token: UPDATEs are conditional on the version read.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "fulfillment_status", "created_at"),
        db.Index("ix_orders_payment_status_created", "payment_status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-facing identifier, e.g. "ORD-1718000000000-K3J9QZ"
    order_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    # Shipping destination (captured at creation)
    ship_full_name = db.Column(db.String(255), nullable=False)
    ship_email = db.Column(db.String(255), nullable=False)
    ship_phone = db.Column(db.String(32), nullable=False)
    ship_address = db.Column(db.String(255), nullable=False)
    ship_city = db.Column(db.String(128), nullable=False)
    ship_region = db.Column(db.String(128), nullable=True)
    ship_delivery_location = db.Column(db.String(255), nullable=True)

    # Trust-on-write total, not recomputed from items
    total_amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default="pesapal")

    fulfillment_status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    tracking_number = db.Column(db.String(64), nullable=True)

    # Gateway correlation
    transaction_tracking_id = db.Column(db.String(128), nullable=True, index=True)
    transaction_status = db.Column(db.String(128), nullable=True)
    payment_error = db.Column(db.Text, nullable=True)

    # Payment timestamps
    payment_initiated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payment_check = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )
    timeline = db.relationship(
        "OrderTimelineEntry",
        backref="order",
        lazy=True,
        order_by="OrderTimelineEntry.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def shipping_destination(self) -> dict:
        return {
            "full_name": self.ship_full_name,
            "email": self.ship_email,
            "phone": self.ship_phone,
            "address": self.ship_address,
            "city": self.ship_city,
            "region": self.ship_region,
            "delivery_location": self.ship_delivery_location,
        }

    def to_summary_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "fulfillment_status": self.fulfillment_status,
            "payment_status": self.payment_status,
            "total_amount_cents": self.total_amount_cents,
            "tracking_number": self.tracking_number,
            "customer_name": self.ship_full_name,
            "created_at": to_utc_z(self.created_at),
        }

    def to_dict(self, include_timeline: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "items": [item.to_dict() for item in self.items],
            "shipping_destination": self.shipping_destination(),
            "total_amount_cents": self.total_amount_cents,
            "payment_method": self.payment_method,
            "fulfillment_status": self.fulfillment_status,
            "payment_status": self.payment_status,
            "tracking_number": self.tracking_number,
            "transaction_tracking_id": self.transaction_tracking_id,
            "transaction_status": self.transaction_status,
            "payment_error": self.payment_error,
            "payment_initiated_at": to_utc_z(self.payment_initiated_at),
            "paid_at": to_utc_z(self.paid_at),
            "payment_completed_at": to_utc_z(self.payment_completed_at),
            "payment_failed_at": to_utc_z(self.payment_failed_at),
            "last_payment_check": to_utc_z(self.last_payment_check),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_timeline:
            data["timeline"] = [entry.to_dict() for entry in self.timeline]
        return data


class OrderItem(db.Model):
    """Line item captured at checkout. Immutable after creation."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_ref = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "product_ref": self.product_ref,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }


class OrderTimelineEntry(db.Model):
    """
    Append-only audit trail of order changes.

    status records the fulfillment status after the change; source names the
    trigger (checkout, callback, ipn, refresh, admin, cli).
    """
    __tablename__ = "order_timeline_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(16), nullable=True)
    source = db.Column(db.String(32), nullable=False, default="admin")
    note = db.Column(db.Text, nullable=False, default="")
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "payment_status": self.payment_status,
            "source": self.source,
            "note": self.note,
            "changed_at": to_utc_z(self.changed_at),
        }
