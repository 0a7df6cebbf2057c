# -*- coding: utf-8 -*-
"""Moderator decision state machine and the side-effect metadata it records.

Every decision goes through :func:`transition`, which classifies the attempt
against the application's current status and, only for a valid change, writes
the new status and a ``ReviewAction`` row in the caller's transaction. Repeated
clicks therefore never produce duplicate actions or overwrite a resolved outcome.
"""

import enum
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update

from models.application import Application, ApplicationStatus, ReviewAction, ReviewActionType
from utils.errors import GateInfraException, GateNotFoundError, GateValidationError

REJECT_REASON_MAX_LENGTH = 500
MAX_TRANSITION_ATTEMPTS = 3


class DecisionAction(str, enum.Enum):
    """The four buttons on a decision card."""

    APPROVE = "approve"
    REJECT = "reject"
    NEED_INFO = "need_info"
    KICK = "kick"

    @property
    def tag(self) -> str:
        """Short form used inside button custom ids."""
        return "needinfo" if self is DecisionAction.NEED_INFO else self.value

    @classmethod
    def from_tag(cls, tag: str) -> "DecisionAction":
        return cls.NEED_INFO if tag == "needinfo" else cls(tag)

    @property
    def review_action_type(self) -> ReviewActionType:
        return ReviewActionType(self.value)


class TransitionKind(str, enum.Enum):
    CHANGED = "changed"
    ALREADY = "already"
    TERMINAL = "terminal"
    INVALID = "invalid"


@dataclass(frozen=True)
class TransitionRule:
    target: ApplicationStatus
    terminal: frozenset
    eligible: frozenset


_S = ApplicationStatus

RULES: dict[DecisionAction, TransitionRule] = {
    DecisionAction.APPROVE: TransitionRule(
        target=_S.APPROVED,
        terminal=frozenset({_S.REJECTED, _S.KICKED}),
        eligible=frozenset({_S.SUBMITTED, _S.NEEDS_INFO}),
    ),
    DecisionAction.REJECT: TransitionRule(
        target=_S.REJECTED,
        terminal=frozenset({_S.APPROVED, _S.KICKED}),
        eligible=frozenset({_S.SUBMITTED, _S.NEEDS_INFO}),
    ),
    DecisionAction.NEED_INFO: TransitionRule(
        target=_S.NEEDS_INFO,
        terminal=frozenset({_S.APPROVED, _S.REJECTED, _S.KICKED}),
        eligible=frozenset({_S.SUBMITTED}),
    ),
    DecisionAction.KICK: TransitionRule(
        target=_S.KICKED,
        terminal=frozenset({_S.APPROVED, _S.REJECTED}),
        eligible=frozenset({_S.SUBMITTED, _S.NEEDS_INFO}),
    ),
}


@dataclass(frozen=True)
class TransitionResult:
    kind: TransitionKind
    status: ApplicationStatus
    review_action_id: int | None = None

    @property
    def changed(self) -> bool:
        return self.kind is TransitionKind.CHANGED


def classify(action: DecisionAction, status: ApplicationStatus) -> TransitionKind:
    rule = RULES[action]
    if status == rule.target:
        return TransitionKind.ALREADY
    if status in rule.terminal:
        return TransitionKind.TERMINAL
    if status in rule.eligible:
        return TransitionKind.CHANGED
    return TransitionKind.INVALID


def validate_reason(reason: str | None) -> str:
    """Trim a rejection reason. Raises GateValidationError when blank."""
    reason = (reason or "").strip()
    if not reason:
        raise GateValidationError("Reason is required.")
    return reason[:REJECT_REASON_MAX_LENGTH]


def _status_values(action: DecisionAction, moderator_id: int, reason: str | None, now: datetime) -> dict:
    target = RULES[action].target
    if action is DecisionAction.APPROVE:
        return dict(Status=target, ResolverId=moderator_id, ResolvedAt=now, ResolutionReason=None, UpdatedAt=now)
    if action is DecisionAction.NEED_INFO:
        return dict(Status=target, ResolverId=None, ResolvedAt=None, ResolutionReason=None, UpdatedAt=now)
    return dict(Status=target, ResolverId=moderator_id, ResolvedAt=now, ResolutionReason=reason, UpdatedAt=now)


def transition(
    session,
    action: DecisionAction,
    application_id: str,
    moderator_id: int,
    reason: str | None = None,
) -> TransitionResult:
    """Apply one decision to an application.

    The status update is a compare-and-set on the status that was read, so a
    concurrent decision landing in between makes the update miss; the attempt is
    then classified again against the fresh status.
    """
    if action is DecisionAction.REJECT:
        reason = validate_reason(reason)
    elif action is DecisionAction.APPROVE or action is DecisionAction.NEED_INFO:
        reason = None
    else:
        reason = (reason or "").strip() or None

    for _ in range(MAX_TRANSITION_ATTEMPTS):
        status = session.execute(
            select(Application.Status).where(Application.Id == application_id).with_for_update()
        ).scalar_one_or_none()
        if status is None:
            raise GateNotFoundError("Application not found.")
        status = ApplicationStatus(status)

        kind = classify(action, status)
        if kind is not TransitionKind.CHANGED:
            return TransitionResult(kind, status)

        now = datetime.now(UTC)
        result = session.execute(
            update(Application)
            .where(Application.Id == application_id, Application.Status == status)
            .values(**_status_values(action, moderator_id, reason, now))
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            continue

        review = ReviewAction(
            ApplicationId=application_id,
            ModeratorId=moderator_id,
            Action=action.review_action_type,
            Reason=reason,
            CreatedAt=now,
        )
        session.add(review)
        session.flush()
        return TransitionResult(TransitionKind.CHANGED, RULES[action].target, review.Id)

    raise GateInfraException("The application changed while deciding. Please try again.")


# -- side-effect metadata ---------------------------------------------------


@dataclass(frozen=True)
class ApproveMeta:
    role_applied: bool
    dm_delivered: bool

    def to_meta(self) -> dict:
        return {"roleApplied": self.role_applied, "dmDelivered": self.dm_delivered}


@dataclass(frozen=True)
class RejectMeta:
    dm_delivered: bool

    def to_meta(self) -> dict:
        return {"dmDelivered": self.dm_delivered}


@dataclass(frozen=True)
class NeedInfoMeta:
    thread_id: int
    thread_url: str
    created: bool = True

    def to_meta(self) -> dict:
        return {"threadId": str(self.thread_id), "threadUrl": self.thread_url, "created": self.created}


@dataclass(frozen=True)
class KickMeta:
    dm_delivered: bool
    kick_succeeded: bool
    error: str | None = None

    def to_meta(self) -> dict:
        meta = {"dmDelivered": self.dm_delivered, "kickSucceeded": self.kick_succeeded}
        if self.error:
            meta["error"] = self.error
        return meta


@dataclass(frozen=True)
class ThreadErrorMeta:
    error: str = "create_failed"

    def to_meta(self) -> dict:
        return {"threadError": self.error}


@dataclass(frozen=True)
class ViewSourceMeta:
    viewed_at: str

    def to_meta(self) -> dict:
        return {"viewed_at": self.viewed_at}


def parse_meta(action: ReviewActionType | str, meta: dict | None):
    """Turn a stored ``Meta`` map back into its dataclass, or None if empty."""
    if not meta:
        return None
    if "threadError" in meta:
        return ThreadErrorMeta(error=str(meta["threadError"]))

    action = ReviewActionType(action)
    if action is ReviewActionType.APPROVE:
        return ApproveMeta(role_applied=bool(meta.get("roleApplied")), dm_delivered=bool(meta.get("dmDelivered")))
    if action is ReviewActionType.REJECT:
        return RejectMeta(dm_delivered=bool(meta.get("dmDelivered")))
    if action is ReviewActionType.NEED_INFO:
        if not meta.get("threadId"):
            return None
        return NeedInfoMeta(
            thread_id=int(meta["threadId"]),
            thread_url=str(meta.get("threadUrl", "")),
            created=bool(meta.get("created", True)),
        )
    if action is ReviewActionType.KICK:
        return KickMeta(
            dm_delivered=bool(meta.get("dmDelivered")),
            kick_succeeded=bool(meta.get("kickSucceeded")),
            error=meta.get("error"),
        )
    return ViewSourceMeta(viewed_at=str(meta.get("viewed_at", "")))
