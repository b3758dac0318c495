"""
Forward-only status updater.

Verifies:
- Advances never pull a row backward, replays are zero-count no-ops
- Cards cascade only for submissions that reached the target
- Group status follows its members (aliases included)
- Backward corrections only pre-PSA or inside a reopened group
- The worklist searches, filters and pages newest first
"""

import pytest

from backoffice.errors import CannotMoveBackward, InvalidStatus, NotBackward, NotFound
from backoffice.models import Card, Group, Submission
from backoffice.services import group_lifecycle, membership_service, status_service


def _cards(db_session, sub):
    return [
        c.status for c in
        db_session.query(Card).filter(Card.submission_id == sub.id).order_by(Card.card_index).all()
    ]


def _status(db_session, code):
    db_session.expire_all()
    return db_session.query(Submission).filter_by(code=code).one().status


@pytest.fixture
def group_with_members(db_session, make_submission):
    make_submission("PSA-2001", status="received", cards=2)
    make_submission("PSA-2002", status="received", cards=1)
    group = group_lifecycle.create_group("batch")
    membership_service.add_submissions_to_group(group.code, ["PSA-2001", "PSA-2002"])
    db_session.commit()
    return group


class TestAdvanceSubmissions:

    def test_advances_and_cascades(self, db_session, make_submission):
        a = make_submission("PSA-1001", status="received", cards=2)
        make_submission("PSA-1002", status="graded", cards=1)

        result = status_service.advance_submissions("shipped_to_psa", ["PSA-1001", "psa-1002"])
        db_session.commit()

        assert result.to_dict() == {"updated_submissions": 1, "updated_cards": 2, "matched": 2}
        assert _status(db_session, "PSA-1001") == "shipped_to_psa"
        assert _status(db_session, "PSA-1002") == "graded"
        assert _cards(db_session, a) == ["shipped_to_psa", "shipped_to_psa"]

    def test_replay_is_noop(self, db_session, make_submission):
        make_submission("PSA-1001", status="received")
        status_service.advance_submissions("shipped_to_psa", ["PSA-1001"])
        db_session.commit()

        again = status_service.advance_submissions("shipped_to_psa", ["PSA-1001"])
        assert (again.updated_submissions, again.updated_cards) == (0, 0)

    def test_null_status_advances(self, db_session, make_submission):
        make_submission("PSA-1003", status=None, cards=1)
        result = status_service.advance_submissions("submitted", ["PSA-1003"])
        assert result.updated_submissions == 1
        assert _status(db_session, "PSA-1003") == "submitted"

    def test_by_numeric_id(self, db_session, make_submission):
        sub = make_submission("PSA-1004", status="received")
        result = status_service.advance_submissions("in_grading", [str(sub.id)])
        assert result.updated_submissions == 1

    def test_no_match(self, db_session):
        assert status_service.advance_submissions("graded", ["NOPE"]).matched == 0
        with pytest.raises(NotFound):
            status_service.advance_submissions("graded", ["NOPE"], require_match=True)

    def test_lagging_cards_follow_but_advanced_cards_stay(self, db_session, make_submission):
        sub = make_submission("PSA-1005", status="received", cards=2)
        first = db_session.query(Card).filter_by(submission_id=sub.id, card_index=1).one()
        first.status = "graded"
        db_session.commit()

        status_service.advance_submissions("shipped_to_psa", ["PSA-1005"])
        db_session.expire_all()
        assert _cards(db_session, sub) == ["graded", "shipped_to_psa"]


class TestSetSubmissionStatus:

    def test_backward_request_is_rejected(self, db_session, make_submission):
        make_submission("PSA-1101", status="graded")
        with pytest.raises(CannotMoveBackward):
            status_service.set_submission_status("PSA-1101", "received")

    def test_same_status_is_noop(self, db_session, make_submission):
        make_submission("PSA-1102", status="graded")
        result = status_service.set_submission_status("PSA-1102", "graded")
        assert result["updated_submissions"] == 0
        assert result["status"] == "graded"

    def test_without_card_cascade(self, db_session, make_submission):
        sub = make_submission("PSA-1103", status="received", cards=2)
        result = status_service.set_submission_status("PSA-1103", "shipped_to_psa", cascade_cards=False)
        assert result["updated_cards"] == 0
        assert _cards(db_session, sub) == ["received", "received"]

    def test_invalid_status(self, db_session, make_submission):
        make_submission("PSA-1104")
        with pytest.raises(InvalidStatus):
            status_service.set_submission_status("PSA-1104", "teleported")

    def test_unknown_submission(self, db_session):
        with pytest.raises(NotFound):
            status_service.set_submission_status("PSA-0000", "graded")


class TestSetGroupStatus:

    def test_at_psa_alias(self, db_session, group_with_members):
        result = status_service.set_group_status(group_with_members.code, "at_psa")
        db_session.commit()

        assert result["updated_submissions"] == 2
        assert result["updated_cards"] == 3
        assert result["group"]["status"] == "AtPSA"
        assert result["group"]["shipped_at"] is not None
        assert _status(db_session, "PSA-2001") == "shipped_to_psa"

    def test_ready_to_ship_alias(self, db_session, make_submission):
        make_submission("PSA-2101", status="submitted_paid")
        group = group_lifecycle.create_group()
        membership_service.add_submissions_to_group(group.id, ["PSA-2101"])
        db_session.commit()

        result = status_service.set_group_status(group.code, "ready_to_ship")
        assert result["group"]["status"] == "ReadyToShip"
        assert _status(db_session, "PSA-2101") == "received"

    def test_group_never_moves_backward(self, db_session, group_with_members):
        status_service.set_group_status(group_with_members.code, "received_from_psa")
        db_session.commit()
        result = status_service.set_group_status(group_with_members.code, "at_psa")

        assert result["updated_submissions"] == 0
        assert result["group"]["status"] == "Returned"
        assert _status(db_session, "PSA-2001") == "received_from_psa"

    def test_returned_stamps_both_timestamps_once(self, db_session, group_with_members):
        status_service.set_group_status(group_with_members.code, "received_from_psa")
        db_session.commit()
        group = db_session.get(Group, group_with_members.id)
        shipped, returned = group.shipped_at, group.returned_at
        assert shipped is not None and returned is not None

        status_service.set_group_status(group_with_members.code, "paid")
        db_session.commit()
        db_session.expire_all()
        group = db_session.get(Group, group_with_members.id)
        assert (group.shipped_at, group.returned_at) == (shipped, returned)

    def test_delivered_closes_group(self, db_session, group_with_members):
        result = status_service.set_group_status(group_with_members.code, "delivered")
        assert result["group"]["status"] == "Closed"

    def test_empty_group_still_moves(self, db_session):
        group = group_lifecycle.create_group()
        db_session.commit()
        result = status_service.set_group_status(group.code, "at_psa")
        assert result["updated_submissions"] == 0
        assert result["group"]["status"] == "AtPSA"


class TestCorrections:

    def test_pre_psa_correction(self, db_session, make_submission):
        make_submission("PSA-3001", status="received")
        result = status_service.correct_submission_status("PSA-3001", "submitted")
        assert result["corrected"] is True
        assert _status(db_session, "PSA-3001") == "submitted"

    def test_not_backward(self, db_session, make_submission):
        make_submission("PSA-3002", status="received")
        with pytest.raises(NotBackward):
            status_service.correct_submission_status("PSA-3002", "received")
        with pytest.raises(NotBackward):
            status_service.correct_submission_status("PSA-3002", "graded")

    def test_post_psa_requires_reopen_hold(self, db_session, make_submission):
        make_submission("PSA-3003", status="graded")
        with pytest.raises(CannotMoveBackward):
            status_service.correct_submission_status("PSA-3003", "shipped_to_psa")

    def test_correction_inside_reopened_group(self, db_session, group_with_members):
        status_service.set_group_status(group_with_members.code, "delivered")
        db_session.commit()
        group_lifecycle.reopen_group(group_with_members.code)
        db_session.commit()

        result = status_service.correct_submission_status("PSA-2001", "received_from_psa", cascade_cards=True)
        db_session.commit()

        assert result["status"] == "received_from_psa"
        assert result["updated_cards"] == 2
        # Hold stays up until the group closes again
        db_session.expire_all()
        assert db_session.get(Group, group_with_members.id).reopen_hold is True

    def test_reclosing_by_status_clears_hold(self, db_session, group_with_members):
        status_service.set_group_status(group_with_members.code, "delivered")
        db_session.commit()
        group_lifecycle.reopen_group(group_with_members.code)
        db_session.commit()

        status_service.set_group_status(group_with_members.code, "delivered")
        db_session.commit()

        db_session.expire_all()
        group = db_session.get(Group, group_with_members.id)
        assert group.status == "Closed"
        assert group.reopen_hold is False
        with pytest.raises(CannotMoveBackward):
            status_service.correct_submission_status("PSA-2001", "received_from_psa")

    def test_hold_on_closed_group_does_not_allow_corrections(self, db_session, group_with_members):
        status_service.set_group_status(group_with_members.code, "delivered")
        group_with_members.reopen_hold = True
        db_session.commit()

        with pytest.raises(CannotMoveBackward):
            status_service.correct_submission_status("PSA-2002", "received_from_psa")


class TestListSubmissions:

    def test_search_is_literal(self, db_session, make_submission):
        make_submission("PSA-5001", email="a_b@example.com")
        make_submission("PSA-5002", email="axb@example.com")

        assert status_service.list_submissions("%")["total"] == 0
        result = status_service.list_submissions("a_b")
        assert [s["code"] for s in result["items"]] == ["PSA-5001"]

    def test_page_past_the_end(self, db_session, make_submission):
        make_submission("PSA-5003")
        result = status_service.list_submissions(page=3, limit=10)
        assert result == {"page": 3, "limit": 10, "total": 1, "items": []}

    def test_status_filter(self, db_session, make_submission):
        make_submission("PSA-5004", status="graded")
        make_submission("PSA-5005", status="received")
        result = status_service.list_submissions(status="Graded")
        assert [s["code"] for s in result["items"]] == ["PSA-5004"]
        with pytest.raises(InvalidStatus):
            status_service.list_submissions(status="teleported")


class TestCardStatus:

    def test_card_advances_after_psa(self, db_session, make_submission):
        sub = make_submission("PSA-4001", status="received_from_psa", cards=1)
        card = sub.card_rows[0]
        result = status_service.set_card_status(card.id, "paid")
        assert result["updated_cards"] == 1
        assert result["card"]["status"] == "paid"

    def test_pre_psa_card_status_rejected(self, db_session, make_submission):
        sub = make_submission("PSA-4002", status="received_from_psa", cards=1)
        with pytest.raises(InvalidStatus):
            status_service.set_card_status(sub.card_rows[0].id, "graded")

    def test_card_backward_rejected(self, db_session, make_submission):
        sub = make_submission("PSA-4003", status="paid", cards=1)
        with pytest.raises(CannotMoveBackward):
            status_service.set_card_status(sub.card_rows[0].id, "balance_due")

    def test_unknown_card(self, db_session):
        with pytest.raises(NotFound):
            status_service.set_card_status(999999, "paid")
