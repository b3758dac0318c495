# Overview: Ordered submission/card and group status tables with rank lookups.

"""
Status Rank Table

================================================================================
PURPOSE: Single source of truth for the order of lifecycle states
================================================================================

SUBMISSION / CARD STATES (rank 0..12):
    pending_payment -> submitted -> submitted_paid -> received ->
    shipped_to_psa -> in_grading -> graded -> shipped_back_to_us ->
    received_from_psa -> balance_due -> paid -> shipped_to_customer ->
    delivered

GROUP STATES (rank 0..4):
    Draft -> ReadyToShip -> AtPSA -> Returned -> Closed

A missing (NULL) submission status ranks -1, below every real state.

The admin UI sends a couple of group-level aliases instead of real states:
    ready_to_ship -> received        (and forces the group to ReadyToShip)
    at_psa        -> shipped_to_psa
================================================================================
"""

from __future__ import annotations

from ..errors import InvalidStatus


SUBMISSION_STATUSES: tuple[str, ...] = (
    "pending_payment",
    "submitted",
    "submitted_paid",
    "received",
    "shipped_to_psa",
    "in_grading",
    "graded",
    "shipped_back_to_us",
    "received_from_psa",
    "balance_due",
    "paid",
    "shipped_to_customer",
    "delivered",
)
_SUBMISSION_RANK = {s: i for i, s in enumerate(SUBMISSION_STATUSES)}

GROUP_STATUSES: tuple[str, ...] = ("Draft", "ReadyToShip", "AtPSA", "Returned", "Closed")
_GROUP_RANK = {s: i for i, s in enumerate(GROUP_STATUSES)}
_GROUP_LOOKUP = {s.lower(): s for s in GROUP_STATUSES}

# Groups whose membership and card order may still be edited
OPEN_GROUP_STATUSES = frozenset({"Draft", "ReadyToShip"})

# Groups that still hold their submissions (a submission may sit in only one)
ACTIVE_GROUP_STATUSES = frozenset({"Draft", "ReadyToShip", "AtPSA", "Returned"})

# Statuses an admin may still correct backward without a reopen hold
PRE_PSA_STATUSES = SUBMISSION_STATUSES[: _SUBMISSION_RANK["shipped_to_psa"] + 1]

# Card-level edits are only meaningful once cards are back from PSA
POST_PSA_STATUSES = SUBMISSION_STATUSES[_SUBMISSION_RANK["received_from_psa"]:]

STATUS_ALIASES = {
    "ready_to_ship": "received",
    "at_psa": "shipped_to_psa",
}


def normalize_status(status) -> str:
    """Trimmed, lower-cased submission status or alias; raises InvalidStatus when blank."""
    s = str(status or "").strip().lower()
    if not s:
        raise InvalidStatus("status is required")
    return s


def resolve_alias(status) -> str:
    """Map a UI alias to the real submission status it stands for."""
    s = normalize_status(status)
    return STATUS_ALIASES.get(s, s)


def rank(status) -> int:
    """
    Rank of a submission/card status.

    None or "" rank -1 (never set). Unknown values raise InvalidStatus.
    """
    if status is None or str(status).strip() == "":
        return -1
    s = str(status).strip().lower()
    if s not in _SUBMISSION_RANK:
        raise InvalidStatus(
            f"Invalid status '{status}'. Must be one of: {', '.join(SUBMISSION_STATUSES)}",
            status=str(status),
        )
    return _SUBMISSION_RANK[s]


def validate_status(status) -> str:
    """Return the canonical status, raising InvalidStatus if it is not on the table."""
    s = normalize_status(status)
    rank(s)
    return s


def is_forward_move(from_status, to_status) -> bool:
    """True when to_status ranks at or above from_status (equal is a no-op, not a regression)."""
    return rank(to_status) >= rank(from_status)


def statuses_below(target) -> list[str]:
    """All statuses strictly behind target, in rank order."""
    return list(SUBMISSION_STATUSES[: rank(target)])


def normalize_group_status(status) -> str:
    """
    Canonical group status.

    Accepts any case and ignores spaces, dashes and underscores, so
    "ready to ship" and "READY_TO_SHIP" both give "ReadyToShip".
    """
    key = "".join(ch for ch in str(status or "") if ch not in " _-").lower()
    if key not in _GROUP_LOOKUP:
        raise InvalidStatus(
            f"Invalid group status '{status}'. Must be one of: {', '.join(GROUP_STATUSES)}",
            status=str(status),
        )
    return _GROUP_LOOKUP[key]


def group_rank(status) -> int:
    return _GROUP_RANK[normalize_group_status(status)]
