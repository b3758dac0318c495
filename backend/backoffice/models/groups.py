from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Group(db.Model):
    """
    A shipping/grading batch sent to PSA together.

    LIFECYCLE (forward-only):
        Draft -> ReadyToShip -> AtPSA -> Returned -> Closed

    The only backward path is reopen (Closed -> Returned), which raises
    reopen_hold so members can take status corrections.
    shipped_at / returned_at are stamped once and never rewritten.
    """
    __tablename__ = "groups"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="Draft", index=True)
    notes = db.Column(db.Text, nullable=True)
    reopen_hold = db.Column(db.Boolean, nullable=False, default=False)

    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "status": self.status,
            "notes": self.notes,
            "reopen_hold": bool(self.reopen_hold),
            "shipped_at": to_utc_z(self.shipped_at),
            "returned_at": to_utc_z(self.returned_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class GroupSubmission(db.Model):
    """Ordered membership of a submission in a group (position is dense 1..N)."""
    __tablename__ = "group_submissions"
    __table_args__ = (
        db.UniqueConstraint("group_id", "submission_id", name="uq_group_submissions_member"),
        db.UniqueConstraint("group_id", "position", name="uq_group_submissions_position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=False, index=True)
    submission_id = db.Column(db.Integer, db.ForeignKey("psa_submissions.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    group = db.relationship("Group", backref=db.backref("memberships", lazy=True))
    submission = db.relationship("Submission")

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "submission_id": self.submission_id,
            "submission_code": self.submission.code if self.submission else None,
            "position": self.position,
            "created_at": to_utc_z(self.created_at),
        }


class GroupCard(db.Model):
    """A card's slot in a group's shipping order (card_no is dense 1..N)."""
    __tablename__ = "group_cards"
    __table_args__ = (
        db.UniqueConstraint("group_id", "card_id", name="uq_group_cards_card"),
        db.UniqueConstraint("group_id", "card_no", name="uq_group_cards_card_no"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("groups.id"), nullable=False, index=True)
    card_id = db.Column(db.Integer, db.ForeignKey("submission_cards.id"), nullable=False, index=True)
    submission_id = db.Column(db.Integer, db.ForeignKey("psa_submissions.id"), nullable=False, index=True)
    card_no = db.Column(db.Integer, nullable=False)

    card = db.relationship("Card")

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "card_id": self.card_id,
            "submission_id": self.submission_id,
            "card_no": self.card_no,
            "card_description": self.card.card_description if self.card else None,
            "status": self.card.status if self.card else None,
        }
