# Overview: Group lifecycle; maps submission progress onto group status and owns create/close/reopen.

"""
Group Lifecycle

================================================================================
PURPOSE: Derive a group's status from its submissions' progress
================================================================================

STATE MACHINE:
    Draft -> ReadyToShip -> AtPSA -> Returned -> Closed

    Draft/ReadyToShip: membership and card order editable
    AtPSA:             cards are at PSA; shipped_at stamped on entry
    Returned:          cards are back; returned_at stamped on entry
    Closed:            every member delivered

SUBMISSION STATUS -> GROUP STATUS:
    shipped_to_psa, in_grading, graded                      -> AtPSA
    shipped_back_to_us, received_from_psa, balance_due,
    paid, shipped_to_customer                               -> Returned
    delivered                                               -> Closed
    (ready_to_ship alias)                                   -> ReadyToShip

RULES:
1. A group only moves forward; the advance is conditional on the status the
   caller read, so two concurrent advances cannot both apply.
2. shipped_at / returned_at are written once (COALESCE) and never changed.
3. Reopen is the single backward path: Closed -> Returned, with reopen_hold
   which lets members take backward status corrections until it closes again.
================================================================================
"""

from __future__ import annotations

import secrets

from sqlalchemy import func, or_, update

from ..errors import CannotMoveBackward, NotAllDelivered, NotFound
from ..extensions import db
from ..models import Group, GroupCard, GroupSubmission, Submission
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .status_rank import group_rank, normalize_group_status


_AT_PSA = frozenset({"shipped_to_psa", "in_grading", "graded"})
_RETURNED = frozenset({
    "shipped_back_to_us",
    "received_from_psa",
    "balance_due",
    "paid",
    "shipped_to_customer",
})

GROUP_CODE_PREFIX = "GRP"


def target_group_status(sub_status) -> str | None:
    """Group status implied by a submission status, or None when it implies nothing."""
    s = str(sub_status or "").strip().lower()
    if s == "ready_to_ship":
        return "ReadyToShip"
    if s in _AT_PSA:
        return "AtPSA"
    if s in _RETURNED:
        return "Returned"
    if s == "delivered":
        return "Closed"
    return None


def resolve_group(ref, *, lock: bool = False) -> Group:
    """
    Find a group by numeric id or by code ("GRP-0001", any case).

    Raises:
        NotFound: no group matches ref
    """
    raw = str(ref or "").strip()
    if not raw:
        raise NotFound("group not found")

    query = db.session.query(Group)
    if raw.isdigit():
        query = query.filter(Group.id == int(raw))
    else:
        query = query.filter(func.upper(Group.code) == raw.upper())
    if lock:
        query = lock_for_update(query)

    group = query.first()
    if group is None:
        raise NotFound(f"group {raw} not found", group=raw)
    return group


def advance_group(group: Group, target: str | None) -> bool:
    """
    Move group forward to target when target ranks strictly higher.

    Returns True if the group row changed. Lower or equal targets, and a
    lost race against a concurrent advance, are no-ops.
    """
    if not target:
        return False
    target = normalize_group_status(target)
    current = group.status or "Draft"
    if group_rank(target) <= group_rank(current):
        return False

    now = utcnow()
    values = {"status": target, "updated_at": now}
    if group_rank(target) >= group_rank("AtPSA"):
        values["shipped_at"] = func.coalesce(Group.shipped_at, now)
    if group_rank(target) >= group_rank("Returned"):
        values["returned_at"] = func.coalesce(Group.returned_at, now)
    if target == "Closed":
        values["reopen_hold"] = False

    stmt = (
        update(Group)
        .where(Group.id == group.id, Group.status == current)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    result = db.session.execute(stmt)
    db.session.refresh(group)
    return bool(result.rowcount)


def create_group(notes: str | None = None) -> Group:
    """Create a Draft group with the next sequential GRP-NNNN code."""
    group = Group(
        code=f"tmp-{secrets.token_hex(8)}",
        status="Draft",
        notes=(notes or "").strip() or None,
        reopen_hold=False,
    )
    db.session.add(group)
    db.session.flush()
    # Autoincrement ids are never reused, so the id doubles as the sequence
    group.code = f"{GROUP_CODE_PREFIX}-{group.id:04d}"
    db.session.flush()
    return group


def _counts_for(group_ids: list[int]) -> tuple[dict, dict]:
    if not group_ids:
        return {}, {}
    sub_counts = dict(
        db.session.query(GroupSubmission.group_id, func.count(GroupSubmission.id))
        .filter(GroupSubmission.group_id.in_(group_ids))
        .group_by(GroupSubmission.group_id)
        .all()
    )
    card_counts = dict(
        db.session.query(GroupCard.group_id, func.count(GroupCard.id))
        .filter(GroupCard.group_id.in_(group_ids))
        .group_by(GroupCard.group_id)
        .all()
    )
    return sub_counts, card_counts


def list_groups(
    *,
    status: str | None = None,
    q: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """Newest-first page of groups with member/card counts and a has_more flag."""
    query = db.session.query(Group)
    if status:
        query = query.filter(Group.status == normalize_group_status(status))
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Group.code.ilike(like), Group.notes.ilike(like)))

    rows = query.order_by(Group.id.desc()).offset(offset).limit(limit + 1).all()
    has_more = len(rows) > limit
    rows = rows[:limit]

    sub_counts, card_counts = _counts_for([g.id for g in rows])
    groups = []
    for g in rows:
        data = g.to_dict()
        data["submission_count"] = sub_counts.get(g.id, 0)
        data["card_count"] = card_counts.get(g.id, 0)
        groups.append(data)

    return {"groups": groups, "has_more": has_more, "limit": limit, "offset": offset}


def get_group(ref) -> dict:
    group = resolve_group(ref)
    sub_counts, card_counts = _counts_for([group.id])
    data = group.to_dict()
    data["submission_count"] = sub_counts.get(group.id, 0)
    data["card_count"] = card_counts.get(group.id, 0)
    return data


def close_group(ref) -> Group:
    """
    Close a group once every member submission is delivered.

    Raises:
        NotFound: unknown group
        NotAllDelivered: with ``pending`` listing each undelivered member
    """
    def _op():
        group = resolve_group(ref, lock=True)

        members = (
            db.session.query(Submission.code, Submission.status)
            .join(GroupSubmission, GroupSubmission.submission_id == Submission.id)
            .filter(GroupSubmission.group_id == group.id)
            .order_by(GroupSubmission.position)
            .all()
        )
        pending = [
            {"code": code, "status": status}
            for code, status in members
            if str(status or "").lower() != "delivered"
        ]
        if pending:
            raise NotAllDelivered(
                f"{len(pending)} submission(s) in {group.code} are not delivered",
                pending=pending,
            )

        now = utcnow()
        group.status = "Closed"
        group.reopen_hold = False
        if group.shipped_at is None:
            group.shipped_at = now
        if group.returned_at is None:
            group.returned_at = now
        group.updated_at = now
        db.session.flush()
        return group

    return run_with_retry(_op)


def reopen_group(ref) -> Group:
    """
    Reopen a Closed group (Closed -> Returned) and raise its reopen hold.

    Raises:
        CannotMoveBackward: group is not Closed
    """
    def _op():
        group = resolve_group(ref, lock=True)
        if group.status != "Closed":
            raise CannotMoveBackward(
                f"Only Closed groups can be reopened (group {group.code} is {group.status})",
                group=group.code,
                status=group.status,
            )
        group.status = "Returned"
        group.reopen_hold = True
        group.updated_at = utcnow()
        db.session.flush()
        return group

    return run_with_retry(_op)
