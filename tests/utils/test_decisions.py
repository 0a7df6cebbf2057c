# -*- coding: utf-8 -*-
"""Tests for utils/decisions.py - the moderator decision state machine"""

import pytest

from models.application import Application, ApplicationStatus, ReviewAction, ReviewActionType
from utils.decisions import (
    REJECT_REASON_MAX_LENGTH,
    ApproveMeta,
    DecisionAction,
    KickMeta,
    NeedInfoMeta,
    RejectMeta,
    ThreadErrorMeta,
    TransitionKind,
    ViewSourceMeta,
    classify,
    parse_meta,
    transition,
    validate_reason,
)
from utils.errors import GateNotFoundError, GateValidationError

MODERATOR_ID = 555000555

S = ApplicationStatus
A = DecisionAction


class TestClassify:
    @pytest.mark.parametrize(
        "action,status,expected",
        [
            (A.APPROVE, S.SUBMITTED, TransitionKind.CHANGED),
            (A.APPROVE, S.NEEDS_INFO, TransitionKind.CHANGED),
            (A.APPROVE, S.APPROVED, TransitionKind.ALREADY),
            (A.APPROVE, S.REJECTED, TransitionKind.TERMINAL),
            (A.APPROVE, S.KICKED, TransitionKind.TERMINAL),
            (A.APPROVE, S.DRAFT, TransitionKind.INVALID),
            (A.REJECT, S.SUBMITTED, TransitionKind.CHANGED),
            (A.REJECT, S.REJECTED, TransitionKind.ALREADY),
            (A.REJECT, S.KICKED, TransitionKind.TERMINAL),
            (A.NEED_INFO, S.SUBMITTED, TransitionKind.CHANGED),
            (A.NEED_INFO, S.NEEDS_INFO, TransitionKind.ALREADY),
            (A.NEED_INFO, S.APPROVED, TransitionKind.TERMINAL),
            (A.NEED_INFO, S.DRAFT, TransitionKind.INVALID),
            (A.KICK, S.NEEDS_INFO, TransitionKind.CHANGED),
            (A.KICK, S.KICKED, TransitionKind.ALREADY),
            (A.KICK, S.APPROVED, TransitionKind.TERMINAL),
            (A.KICK, S.DRAFT, TransitionKind.INVALID),
        ],
    )
    def test_rules(self, action, status, expected):
        assert classify(action, status) is expected


class TestDecisionAction:
    def test_tag_round_trip(self):
        assert A.NEED_INFO.tag == "needinfo"
        assert A.from_tag("needinfo") is A.NEED_INFO
        assert A.from_tag("kick") is A.KICK

    def test_review_action_type(self):
        assert A.NEED_INFO.review_action_type is ReviewActionType.NEED_INFO


class TestValidateReason:
    def test_trims(self):
        assert validate_reason("  spam  ") == "spam"

    def test_caps_length(self):
        assert len(validate_reason("x" * 900)) == REJECT_REASON_MAX_LENGTH

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_blank(self, reason):
        with pytest.raises(GateValidationError, match="Reason is required"):
            validate_reason(reason)


class TestTransition:
    def test_approve_submitted(self, db_session, make_application):
        app = make_application()

        result = transition(db_session, A.APPROVE, app.Id, MODERATOR_ID)

        assert result.changed
        assert result.status is S.APPROVED
        stored = Application.get_by_id(app.Id, db_session)
        assert stored.Status == S.APPROVED
        assert stored.ResolverId == MODERATOR_ID
        assert stored.ResolvedAt is not None
        action = ReviewAction.get_latest(app.Id, db_session)
        assert action.Id == result.review_action_id
        assert action.Action == ReviewActionType.APPROVE

    def test_repeat_is_already_and_writes_nothing(self, db_session, make_application):
        app = make_application()
        transition(db_session, A.APPROVE, app.Id, MODERATOR_ID)

        result = transition(db_session, A.APPROVE, app.Id, MODERATOR_ID + 1)

        assert result.kind is TransitionKind.ALREADY
        assert result.review_action_id is None
        assert ReviewAction.count(app.Id, db_session) == 1
        assert Application.get_by_id(app.Id, db_session).ResolverId == MODERATOR_ID

    def test_reject_on_kicked_is_terminal(self, db_session, make_application):
        app = make_application(S.KICKED)

        result = transition(db_session, A.REJECT, app.Id, MODERATOR_ID, "late")

        assert result.kind is TransitionKind.TERMINAL
        assert result.status is S.KICKED
        assert ReviewAction.count(app.Id, db_session) == 0

    def test_kick_on_draft_is_invalid(self, db_session, make_application):
        app = make_application(S.DRAFT)
        assert transition(db_session, A.KICK, app.Id, MODERATOR_ID).kind is TransitionKind.INVALID
        assert Application.get_by_id(app.Id, db_session).Status == S.DRAFT

    def test_reject_stores_reason(self, db_session, make_application):
        app = make_application()

        transition(db_session, A.REJECT, app.Id, MODERATOR_ID, "  Not a fit  ")

        assert Application.get_by_id(app.Id, db_session).ResolutionReason == "Not a fit"
        assert ReviewAction.get_latest(app.Id, db_session).Reason == "Not a fit"

    def test_reject_requires_reason(self, db_session, make_application):
        app = make_application()
        with pytest.raises(GateValidationError):
            transition(db_session, A.REJECT, app.Id, MODERATOR_ID, " ")
        assert Application.get_by_id(app.Id, db_session).Status == S.SUBMITTED

    def test_need_info_keeps_unresolved(self, db_session, make_application):
        app = make_application()

        result = transition(db_session, A.NEED_INFO, app.Id, MODERATOR_ID, "ignored")

        assert result.status is S.NEEDS_INFO
        stored = Application.get_by_id(app.Id, db_session)
        assert stored.ResolverId is None
        assert stored.ResolvedAt is None
        assert ReviewAction.get_latest(app.Id, db_session).Reason is None

    def test_approve_after_need_info(self, db_session, make_application):
        app = make_application()
        transition(db_session, A.NEED_INFO, app.Id, MODERATOR_ID)

        assert transition(db_session, A.APPROVE, app.Id, MODERATOR_ID).changed
        assert ReviewAction.count(app.Id, db_session) == 2

    def test_kick_optional_reason(self, db_session, make_application):
        app = make_application()
        transition(db_session, A.KICK, app.Id, MODERATOR_ID, "   ")
        assert ReviewAction.get_latest(app.Id, db_session).Reason is None

    def test_missing_application(self, db_session):
        with pytest.raises(GateNotFoundError, match="Application not found"):
            transition(db_session, A.APPROVE, "00000000-0000-0000-0000-000000000000", MODERATOR_ID)


class TestMeta:
    @pytest.mark.parametrize(
        "action,meta",
        [
            (ReviewActionType.APPROVE, ApproveMeta(role_applied=True, dm_delivered=False)),
            (ReviewActionType.REJECT, RejectMeta(dm_delivered=True)),
            (ReviewActionType.NEED_INFO, NeedInfoMeta(thread_id=42, thread_url="https://x/42", created=False)),
            (ReviewActionType.KICK, KickMeta(dm_delivered=True, kick_succeeded=False, error="Forbidden")),
            (ReviewActionType.AVATAR_VIEWSRC, ViewSourceMeta(viewed_at="2026-01-01T00:00:00+00:00")),
        ],
    )
    def test_parse_restores_dataclass(self, action, meta):
        assert parse_meta(action, meta.to_meta()) == meta

    def test_thread_id_stored_as_string(self):
        assert NeedInfoMeta(thread_id=42, thread_url="u").to_meta()["threadId"] == "42"

    def test_thread_error_wins(self):
        assert parse_meta("need_info", ThreadErrorMeta().to_meta()) == ThreadErrorMeta("create_failed")

    def test_kick_without_error_omits_key(self):
        assert "error" not in KickMeta(dm_delivered=True, kick_succeeded=True).to_meta()

    def test_empty_meta(self):
        assert parse_meta("approve", None) is None
        assert parse_meta("need_info", {"created": True}) is None
