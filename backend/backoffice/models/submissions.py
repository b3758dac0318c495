from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Submission(db.Model):
    """
    A customer's card-grading intake request.

    The external ``code`` (e.g. "psa-191") is what the admin UI, invoices and
    the Shopify note attributes refer to. ``status`` is a value from the
    status rank table and only moves forward (see status_service).
    """
    __tablename__ = "psa_submissions"
    __table_args__ = (
        db.Index("ix_psa_submissions_email_status", "customer_email", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)

    customer_email = db.Column(db.String(255), nullable=True, index=True)
    shopify_customer_id = db.Column(db.String(64), nullable=True, index=True)

    # Null means "never set" and ranks below every real status
    status = db.Column(db.String(32), nullable=True, index=True)

    cards = db.Column(db.Integer, nullable=False, default=0)
    grading_service = db.Column(db.String(128), nullable=True)

    # Raw address as captured at intake; keys vary (zip/postal, state/region, ...)
    shipping_address = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    card_rows = db.relationship(
        "Card",
        backref="submission",
        lazy=True,
        order_by="Card.card_index",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "customer_email": self.customer_email,
            "shopify_customer_id": self.shopify_customer_id,
            "status": self.status,
            "cards": self.cards,
            "grading_service": self.grading_service,
            "shipping_address": self.shipping_address,
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Card(db.Model):
    """One physical card inside a submission; status mirrors or lags the submission."""
    __tablename__ = "submission_cards"
    __table_args__ = (
        db.Index("ix_submission_cards_sub_index", "submission_id", "card_index"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    submission_id = db.Column(db.Integer, db.ForeignKey("psa_submissions.id"), nullable=False, index=True)

    card_index = db.Column(db.Integer, nullable=False, default=0)
    card_description = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(32), nullable=True, index=True)

    # Pricing (cents). grading_cents overrides the flat rate when set.
    grading_cents = db.Column(db.Integer, nullable=True)
    upcharge_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "card_index": self.card_index,
            "card_description": self.card_description,
            "status": self.status,
            "grading_cents": self.grading_cents,
            "upcharge_cents": self.upcharge_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
