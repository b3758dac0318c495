from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Invoice(db.Model):
    """
    Billing unit for one customer at one shipping address.

    LIFECYCLE:
        pending -> draft -> sent -> paid -> closed
        pending/draft -> superseded (split by address)

    pending/draft/sent are "open": a submission linked to an open invoice is
    not billable again. Totals always equal the sum of the invoice's items.
    """
    __tablename__ = "billing_invoices"
    __table_args__ = (
        db.Index("ix_billing_invoices_email_status", "customer_email", "status"),
        db.Index("ix_billing_invoices_email_address", "customer_email", "address_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_email = db.Column(db.String(255), nullable=True, index=True)
    shopify_customer_id = db.Column(db.String(64), nullable=True)
    group_code = db.Column(db.String(32), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    currency = db.Column(db.String(8), nullable=False, default="USD")

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    # External draft order
    draft_id = db.Column(db.String(64), nullable=True)
    invoice_url = db.Column(db.String(512), nullable=True)

    # Ship-to, normalized; address_key is the canonical grouping key
    address_key = db.Column(db.String(512), nullable=False, default="")
    ship_to_name = db.Column(db.String(255), nullable=True)
    ship_to_line1 = db.Column(db.String(255), nullable=True)
    ship_to_line2 = db.Column(db.String(255), nullable=True)
    ship_to_city = db.Column(db.String(128), nullable=True)
    ship_to_region = db.Column(db.String(128), nullable=True)
    ship_to_postal = db.Column(db.String(32), nullable=True)
    ship_to_country = db.Column(db.String(64), nullable=True)

    parent_invoice_id = db.Column(db.Integer, db.ForeignKey("billing_invoices.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    items = db.relationship("InvoiceItem", backref="invoice", lazy=True, order_by="InvoiceItem.id")
    submission_links = db.relationship("InvoiceSubmission", backref="invoice", lazy=True)

    def ship_to(self) -> dict | None:
        fields = {
            "name": self.ship_to_name,
            "line1": self.ship_to_line1,
            "line2": self.ship_to_line2,
            "city": self.ship_to_city,
            "region": self.ship_to_region,
            "postal": self.ship_to_postal,
            "country": self.ship_to_country,
        }
        if not any(fields.values()):
            return None
        return {k: v or "" for k, v in fields.items()}

    def to_dict(self, *, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "customer_email": self.customer_email,
            "shopify_customer_id": self.shopify_customer_id,
            "group_code": self.group_code,
            "status": self.status,
            "currency": self.currency,
            "subtotal_cents": self.subtotal_cents,
            "shipping_cents": self.shipping_cents,
            "total_cents": self.total_cents,
            "draft_id": self.draft_id,
            "invoice_url": self.invoice_url,
            "address_key": self.address_key,
            "ship_to": self.ship_to(),
            "parent_invoice_id": self.parent_invoice_id,
            "submissions": sorted(link.submission_code for link in self.submission_links),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "sent_at": to_utc_z(self.sent_at),
            "paid_at": to_utc_z(self.paid_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class InvoiceItem(db.Model):
    """
    Invoice line. (invoice_id, item_ref, kind) is the upsert key so repeated
    assembly runs update lines instead of duplicating them.
    """
    __tablename__ = "billing_invoice_items"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "item_ref", "kind", name="uq_billing_invoice_items_ref"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("billing_invoices.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False)  # service, upcharge, shipping
    item_ref = db.Column(db.String(64), nullable=False)
    submission_code = db.Column(db.String(64), nullable=True, index=True)
    title = db.Column(db.String(255), nullable=False)

    qty = db.Column(db.Integer, nullable=False, default=1)
    unit_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "kind": self.kind,
            "item_ref": self.item_ref,
            "submission_code": self.submission_code,
            "title": self.title,
            "qty": self.qty,
            "unit_cents": self.unit_cents,
            "amount_cents": self.amount_cents,
        }


class InvoiceSubmission(db.Model):
    """Junction between invoices and the submission codes they bill."""
    __tablename__ = "billing_invoice_submissions"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "submission_code", name="uq_billing_invoice_submissions"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("billing_invoices.id"), nullable=False, index=True)
    submission_code = db.Column(db.String(64), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
