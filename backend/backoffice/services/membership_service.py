# Overview: Group membership edits and dense renumbering of member positions and card numbers.

"""
Membership Repacker

================================================================================
PURPOSE: Keep group_submissions.position and group_cards.card_no dense (1..N)
================================================================================

Both sequences carry a UNIQUE (group_id, n) constraint, so renumbering in
place would collide with itself. Every renumber is therefore two-phase:

    Phase 1: write TEMP_OFFSET + i for each row in the desired order
    Phase 2: write i for each row in the same order

Each phase is one UPDATE per row keyed by primary key; no row ever shares
a number with another row of the same group, whatever order the database
applies them in. All of it happens inside the caller's transaction, after
the group row has been locked, so a failure rolls back both phases.
================================================================================
"""

from __future__ import annotations

from sqlalchemy import func, inspect, update

from ..errors import DuplicateOpenMembership, GroupLocked, InvalidCardOrder, NotFound
from ..extensions import db
from ..models import Card, Group, GroupCard, GroupSubmission, Submission
from .concurrency import lock_group, run_with_retry
from .group_lifecycle import resolve_group
from .status_rank import ACTIVE_GROUP_STATUSES, OPEN_GROUP_STATUSES
from .status_service import resolve_submission_ids


TEMP_OFFSET = 1_000_000


def _two_phase_renumber(model, column: str, row_ids: list[int]) -> int:
    col = getattr(model, column)
    for i, row_id in enumerate(row_ids, start=1):
        db.session.execute(
            update(model)
            .where(model.id == row_id)
            .values({col: TEMP_OFFSET + i})
            .execution_options(synchronize_session=False)
        )
    for i, row_id in enumerate(row_ids, start=1):
        db.session.execute(
            update(model)
            .where(model.id == row_id)
            .values({col: i})
            .execution_options(synchronize_session=False)
        )
    return len(row_ids)


def _expire(model, group_id: int) -> None:
    # Bulk UPDATEs bypass the identity map; drop stale numbers it may hold
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, model) and inspect(obj).dict.get("group_id") == group_id:
            db.session.expire(obj)


def repack_card_order(group_id: int) -> int:
    """
    Renumber a group's card_no to 1..N, keeping relative order (ties by id).

    Returns the number of rows written.
    """
    db.session.flush()
    lock_group(group_id)
    row_ids = [
        rid for (rid,) in (
            db.session.query(GroupCard.id)
            .filter(GroupCard.group_id == group_id)
            .order_by(GroupCard.card_no, GroupCard.id)
            .all()
        )
    ]
    written = _two_phase_renumber(GroupCard, "card_no", row_ids)
    _expire(GroupCard, group_id)
    return written


def repack_member_positions(group_id: int) -> int:
    """Renumber a group's member positions to 1..N, keeping relative order."""
    db.session.flush()
    lock_group(group_id)
    row_ids = [
        rid for (rid,) in (
            db.session.query(GroupSubmission.id)
            .filter(GroupSubmission.group_id == group_id)
            .order_by(GroupSubmission.position, GroupSubmission.id)
            .all()
        )
    ]
    written = _two_phase_renumber(GroupSubmission, "position", row_ids)
    _expire(GroupSubmission, group_id)
    return written


def _editable_group(group_ref) -> Group:
    group = resolve_group(group_ref, lock=True)
    if group.status not in OPEN_GROUP_STATUSES:
        raise GroupLocked(
            f"Cannot change membership of {group.code} because its status is {group.status}",
            group=group.code,
            status=group.status,
        )
    return group


def add_submissions_to_group(group_ref, submission_refs) -> dict:
    """
    Append submissions (and their cards) to a Draft/ReadyToShip group.

    Members already in the group are skipped. A submission that sits in
    another group that has not closed yet is rejected.

    Returns:
        {"added_submissions": n, "added_cards": n}

    Raises:
        GroupLocked, NotFound, DuplicateOpenMembership
    """
    def _op():
        group = _editable_group(group_ref)

        ids, missing = resolve_submission_ids(submission_refs)
        if missing:
            raise NotFound(
                f"unknown submission(s): {', '.join(missing)}",
                missing=missing,
            )

        existing = {
            sid for (sid,) in (
                db.session.query(GroupSubmission.submission_id)
                .filter(GroupSubmission.group_id == group.id)
                .all()
            )
        }
        new_ids = [sid for sid in ids if sid not in existing]
        if not new_ids:
            return {"added_submissions": 0, "added_cards": 0}

        conflicts = (
            db.session.query(Submission.code, Group.code)
            .join(GroupSubmission, GroupSubmission.submission_id == Submission.id)
            .join(Group, Group.id == GroupSubmission.group_id)
            .filter(
                GroupSubmission.submission_id.in_(new_ids),
                GroupSubmission.group_id != group.id,
                Group.status.in_(ACTIVE_GROUP_STATUSES),
            )
            .all()
        )
        if conflicts:
            raise DuplicateOpenMembership(
                "submission(s) already belong to another open group",
                conflicts=[{"submission": s, "group": g} for s, g in conflicts],
            )

        next_pos = (
            db.session.query(func.max(GroupSubmission.position))
            .filter(GroupSubmission.group_id == group.id)
            .scalar()
            or 0
        )
        for sid in new_ids:
            next_pos += 1
            db.session.add(GroupSubmission(group_id=group.id, submission_id=sid, position=next_pos))
        db.session.flush()

        linked_cards = {
            cid for (cid,) in (
                db.session.query(GroupCard.card_id)
                .filter(GroupCard.group_id == group.id)
                .all()
            )
        }
        next_no = (
            db.session.query(func.max(GroupCard.card_no))
            .filter(GroupCard.group_id == group.id)
            .scalar()
            or 0
        )
        cards = (
            db.session.query(Card)
            .join(GroupSubmission, GroupSubmission.submission_id == Card.submission_id)
            .filter(GroupSubmission.group_id == group.id, Card.submission_id.in_(new_ids))
            .order_by(GroupSubmission.position, Card.card_index, Card.id)
            .all()
        )
        added_cards = 0
        for card in cards:
            if card.id in linked_cards:
                continue
            next_no += 1
            added_cards += 1
            db.session.add(GroupCard(
                group_id=group.id,
                card_id=card.id,
                submission_id=card.submission_id,
                card_no=next_no,
            ))
        db.session.flush()

        repack_member_positions(group.id)
        repack_card_order(group.id)
        return {"added_submissions": len(new_ids), "added_cards": added_cards}

    return run_with_retry(_op)


def remove_submissions_from_group(group_ref, submission_refs) -> dict:
    """
    Detach submissions and their cards from a Draft/ReadyToShip group, then
    close the gaps in both sequences. Unknown refs remove nothing.
    """
    def _op():
        group = _editable_group(group_ref)
        ids, _missing = resolve_submission_ids(submission_refs)
        if not ids:
            return {"removed_submissions": 0, "removed_cards": 0}

        removed_cards = (
            db.session.query(GroupCard)
            .filter(GroupCard.group_id == group.id, GroupCard.submission_id.in_(ids))
            .delete(synchronize_session=False)
        )
        removed_subs = (
            db.session.query(GroupSubmission)
            .filter(GroupSubmission.group_id == group.id, GroupSubmission.submission_id.in_(ids))
            .delete(synchronize_session=False)
        )
        db.session.expire_all()

        repack_member_positions(group.id)
        repack_card_order(group.id)
        return {"removed_submissions": removed_subs, "removed_cards": removed_cards}

    return run_with_retry(_op)


def reorder_group_cards(group_ref, ordered_card_ids) -> int:
    """
    Put a group's cards in the given order.

    ordered_card_ids must be an exact permutation of the group's card ids.
    Returns the number of cards renumbered.

    Raises:
        InvalidCardOrder: foreign, missing or repeated card ids
    """
    def _op():
        group = resolve_group(group_ref, lock=True)

        try:
            order = [int(cid) for cid in ordered_card_ids]
        except (TypeError, ValueError):
            raise InvalidCardOrder("order must be a list of card ids")

        rows = (
            db.session.query(GroupCard.card_id, GroupCard.id)
            .filter(GroupCard.group_id == group.id)
            .all()
        )
        by_card = dict(rows)

        if len(order) != len(set(order)):
            raise InvalidCardOrder("order lists a card more than once")
        foreign = [cid for cid in order if cid not in by_card]
        if foreign:
            raise InvalidCardOrder(
                f"card(s) not in {group.code}: {', '.join(map(str, foreign))}",
                foreign=foreign,
            )
        if len(order) != len(by_card):
            raise InvalidCardOrder(
                "order must include every card in the group exactly once",
                expected=len(by_card),
                received=len(order),
            )

        db.session.flush()
        written = _two_phase_renumber(GroupCard, "card_no", [by_card[cid] for cid in order])
        _expire(GroupCard, group.id)
        return written

    return run_with_retry(_op)


def list_group_members(group_ref) -> list[dict]:
    group = resolve_group(group_ref)
    rows = (
        db.session.query(GroupSubmission, Submission)
        .join(Submission, Submission.id == GroupSubmission.submission_id)
        .filter(GroupSubmission.group_id == group.id)
        .order_by(GroupSubmission.position)
        .all()
    )
    members = []
    for link, sub in rows:
        data = sub.to_dict()
        data["position"] = link.position
        members.append(data)
    return members


def list_group_cards(group_ref) -> list[dict]:
    group = resolve_group(group_ref)
    rows = (
        db.session.query(GroupCard, Card, Submission.code)
        .join(Card, Card.id == GroupCard.card_id)
        .join(Submission, Submission.id == GroupCard.submission_id)
        .filter(GroupCard.group_id == group.id)
        .order_by(GroupCard.card_no)
        .all()
    )
    cards = []
    for link, card, code in rows:
        data = card.to_dict()
        data["card_no"] = link.card_no
        data["submission_code"] = code
        cards.append(data)
    return cards
