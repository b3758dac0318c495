# Overview: Forward-only status updates for submissions, their cards, and whole groups.

"""
Forward-Only Status Updater

================================================================================
PURPOSE: Move submissions (and their cards) forward through the rank table
================================================================================

RULES (NON-NEGOTIABLE):
1. Advances are ONE conditional UPDATE evaluated by the database:
       WHERE id IN (...) AND (status IN statuses_below(target) OR status IS NULL)
   A row already at or past the target is left alone, so concurrent admins
   and retries can never pull a status backward.
2. Cards cascade the same way, and only for submissions that now sit at the
   target.
3. Backward moves go through correct_submission_status, which only allows
   pre-PSA fixes or fixes inside a reopened (reopen_hold) group.
4. Counting operations always return counts; a no-op is a success with 0.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import or_, select, update

from ..errors import CannotMoveBackward, InvalidStatus, NotBackward, NotFound
from ..extensions import db
from ..models import Card, Group, GroupSubmission, Submission
from ..time_utils import utcnow
from . import status_rank
from .group_lifecycle import advance_group, resolve_group, target_group_status


@dataclass(frozen=True)
class StatusUpdateResult:
    updated_submissions: int
    updated_cards: int
    matched: int

    def to_dict(self) -> dict:
        return {
            "updated_submissions": self.updated_submissions,
            "updated_cards": self.updated_cards,
            "matched": self.matched,
        }


def resolve_submission_ids(refs) -> tuple[list[int], list[str]]:
    """
    Resolve submission refs (numeric ids or codes) to ids.

    Returns (ids in first-seen order, refs that matched nothing).
    """
    refs = [str(r).strip() for r in (refs or []) if str(r).strip()]
    if not refs:
        return [], []

    numeric = [int(r) for r in refs if r.isdigit()]
    lowered = [r.lower() for r in refs]
    rows = (
        db.session.query(Submission.id, Submission.code)
        .filter(or_(Submission.id.in_(numeric), db.func.lower(Submission.code).in_(lowered)))
        .all()
    )
    by_id = {str(sid): sid for sid, _ in rows}
    by_code = {code.lower(): sid for sid, code in rows}

    ids: list[int] = []
    missing: list[str] = []
    for ref in refs:
        sid = by_code.get(ref.lower())
        if sid is None:
            sid = by_id.get(ref)
        if sid is None:
            missing.append(ref)
        elif sid not in ids:
            ids.append(sid)
    return ids, missing


def resolve_submission(ref) -> Submission:
    ids, _ = resolve_submission_ids([ref])
    if not ids:
        raise NotFound(f"submission {ref} not found", submission=str(ref))
    return db.session.get(Submission, ids[0])


def list_submissions(q: str | None = None, status: str | None = None, *, page: int = 1, limit: int = 25) -> dict:
    """
    Admin submissions worklist, newest first.

    q is a case-insensitive substring of the code or customer email; status
    (aliases allowed) must match exactly. Returns page, limit, total and the
    page of submissions.
    """
    query = db.session.query(Submission)
    if status:
        query = query.filter(Submission.status == status_rank.validate_status(status_rank.resolve_alias(status)))
    q = (q or "").strip()
    if q:
        query = query.filter(or_(
            Submission.code.icontains(q, autoescape=True),
            Submission.customer_email.icontains(q, autoescape=True),
        ))

    total = query.count()
    rows = (
        query.order_by(Submission.created_at.desc(), Submission.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"page": page, "limit": limit, "total": total, "items": [s.to_dict() for s in rows]}


def _advance_rows(target: str, submission_ids: list[int], *, cascade_cards: bool = True) -> tuple[int, int]:
    below = status_rank.statuses_below(target)
    now = utcnow()

    sub_stmt = (
        update(Submission)
        .where(
            Submission.id.in_(submission_ids),
            or_(Submission.status.in_(below), Submission.status.is_(None)),
        )
        .values(status=target, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    updated_subs = db.session.execute(sub_stmt).rowcount or 0

    updated_cards = 0
    if cascade_cards:
        at_target = (
            select(Submission.id)
            .where(Submission.id.in_(submission_ids), Submission.status == target)
        )
        card_stmt = (
            update(Card)
            .where(
                Card.submission_id.in_(at_target),
                or_(Card.status.in_(below), Card.status.is_(None)),
            )
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        updated_cards = db.session.execute(card_stmt).rowcount or 0

    return updated_subs, updated_cards


def advance_submissions(target, submission_refs, *, require_match: bool = False) -> StatusUpdateResult:
    """
    Advance many submissions to target, forward-only, cascading to cards.

    Args:
        target: a status from the rank table
        submission_refs: ids or codes
        require_match: raise NotFound instead of returning zero counts when
            no ref resolves

    Returns:
        StatusUpdateResult with rows actually changed and refs matched
    """
    target = status_rank.validate_status(target)
    ids, _missing = resolve_submission_ids(submission_refs)
    if not ids:
        if require_match:
            raise NotFound("no matching submissions")
        return StatusUpdateResult(0, 0, 0)

    updated_subs, updated_cards = _advance_rows(target, ids)
    db.session.flush()
    return StatusUpdateResult(updated_subs, updated_cards, len(ids))


def set_submission_status(ref, status, *, cascade_cards: bool = True) -> dict:
    """
    Advance one submission. An explicit request to go backward is an error;
    requesting the current status is a no-op.
    """
    target = status_rank.validate_status(status)
    sub = resolve_submission(ref)

    if status_rank.rank(target) < status_rank.rank(sub.status):
        raise CannotMoveBackward(
            f"{sub.code} is {sub.status}; {target} would move it backward",
            submission=sub.code,
            status=sub.status,
        )

    updated_subs, updated_cards = _advance_rows(target, [sub.id], cascade_cards=cascade_cards)
    db.session.flush()
    db.session.refresh(sub)
    return {
        "submission": sub.code,
        "status": sub.status,
        "updated_submissions": updated_subs,
        "updated_cards": updated_cards,
        "cascaded": bool(cascade_cards),
    }


def set_group_status(group_ref, requested) -> dict:
    """
    Advance every member of a group (and their cards) to a status, then
    advance the group itself to the status the submissions imply.

    The "ready_to_ship" alias moves members to "received" and the group to
    ReadyToShip; "at_psa" is shipped_to_psa.
    """
    requested = status_rank.normalize_status(requested)
    target = status_rank.validate_status(status_rank.resolve_alias(requested))

    group = resolve_group(group_ref)
    member_ids = [
        sid for (sid,) in (
            db.session.query(GroupSubmission.submission_id)
            .filter(GroupSubmission.group_id == group.id)
            .order_by(GroupSubmission.position)
            .all()
        )
    ]

    updated_subs = updated_cards = 0
    if member_ids:
        updated_subs, updated_cards = _advance_rows(target, member_ids)

    group_target = target_group_status(requested) or target_group_status(target)
    advance_group(group, group_target)
    db.session.flush()

    return {
        "updated_submissions": updated_subs,
        "updated_cards": updated_cards,
        "group": group.to_dict(),
    }


def _in_held_group(submission_id: int) -> bool:
    return (
        db.session.query(GroupSubmission.id)
        .join(Group, Group.id == GroupSubmission.group_id)
        .filter(
            GroupSubmission.submission_id == submission_id,
            Group.reopen_hold.is_(True),
            Group.status != "Closed",
        )
        .first()
        is not None
    )


def correct_submission_status(ref, status, *, cascade_cards: bool = False) -> dict:
    """
    Move one submission backward.

    Allowed when both the current and the target status are pre-PSA
    (pending_payment .. shipped_to_psa), or when the submission sits in a
    group whose reopen hold is set.

    Raises:
        NotBackward: target is not strictly behind the current status
        CannotMoveBackward: no sanctioned correction path applies
    """
    target = status_rank.validate_status(status)
    sub = resolve_submission(ref)
    current = sub.status

    if status_rank.rank(target) >= status_rank.rank(current):
        raise NotBackward(
            f"{target} is not behind {current or 'unset'}; use set-status to advance",
            submission=sub.code,
            status=current,
        )

    pre_psa = set(status_rank.PRE_PSA_STATUSES)
    if not (target in pre_psa and current in pre_psa) and not _in_held_group(sub.id):
        raise CannotMoveBackward(
            f"{sub.code} can only be corrected from {current} inside a reopened group",
            submission=sub.code,
            status=current,
        )

    now = utcnow()
    # Conditional on the status we validated against
    result = db.session.execute(
        update(Submission)
        .where(Submission.id == sub.id, Submission.status == current)
        .values(status=target, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    updated_cards = 0
    if result.rowcount and cascade_cards:
        updated_cards = db.session.execute(
            update(Card)
            .where(Card.submission_id == sub.id)
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session="fetch")
        ).rowcount or 0

    db.session.flush()
    db.session.refresh(sub)
    return {
        "submission": sub.code,
        "status": sub.status,
        "corrected": bool(result.rowcount),
        "updated_cards": updated_cards,
    }


def set_card_status(card_id, status) -> dict:
    """Advance one card after it is back from PSA (received_from_psa onward)."""
    target = status_rank.validate_status(status)
    if target not in status_rank.POST_PSA_STATUSES:
        raise InvalidStatus(
            f"Card status must be one of: {', '.join(status_rank.POST_PSA_STATUSES)}",
            status=target,
        )

    try:
        cid = int(card_id)
    except (TypeError, ValueError):
        raise NotFound(f"card {card_id} not found", card=str(card_id))
    card = db.session.get(Card, cid)
    if card is None:
        raise NotFound(f"card {card_id} not found", card=str(card_id))

    if status_rank.rank(target) < status_rank.rank(card.status):
        raise CannotMoveBackward(
            f"card {card.id} is {card.status}; {target} would move it backward",
            card=card.id,
            status=card.status,
        )

    below = status_rank.statuses_below(target)
    updated = db.session.execute(
        update(Card)
        .where(Card.id == card.id, or_(Card.status.in_(below), Card.status.is_(None)))
        .values(status=target, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    ).rowcount or 0
    db.session.flush()
    db.session.refresh(card)
    return {"card": card.to_dict(), "updated_cards": updated}
