# -*- coding: utf-8 -*-
"""Application lifecycle database models"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UnicodeText,
    delete,
    select,
    text,
    update,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import relationship
from utils import database as db
from utils.errors import ActiveApplicationError

ANSWER_MAX_LENGTH = 1000


class ApplicationStatus(str, enum.Enum):
    """Valid status values for an application."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    NEEDS_INFO = "needs_info"
    APPROVED = "approved"
    REJECTED = "rejected"
    KICKED = "kicked"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ApplicationStatus.APPROVED, ApplicationStatus.REJECTED, ApplicationStatus.KICKED})
UNRESOLVED_STATUSES = (ApplicationStatus.SUBMITTED, ApplicationStatus.NEEDS_INFO)


class ReviewActionType(str, enum.Enum):
    """Valid action values for a review log entry."""

    APPROVE = "approve"
    REJECT = "reject"
    NEED_INFO = "need_info"
    KICK = "kick"
    AVATAR_VIEWSRC = "avatar_viewsrc"


class BridgeState(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


def _enum(enum_cls):
    """Store the enum member's value rather than its name."""
    return SAEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=16,
        validate_strings=True,
    )


def _now() -> datetime:
    return datetime.now(UTC)


def truncate_answer(value: str | None) -> str:
    value = value or ""
    return value[:ANSWER_MAX_LENGTH]


class Application(db.BASE):
    """Database entity model for one user's admission attempt in one guild."""

    __tablename__ = "Application"
    __table_args__ = (
        Index("Application_GuildId_UserId", "GuildId", "UserId"),
        Index("Application_Status", "Status"),
    )

    Id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    GuildId = Column(BigInteger, nullable=False)
    UserId = Column(BigInteger, nullable=False)
    Status = Column(_enum(ApplicationStatus), nullable=False, default=ApplicationStatus.DRAFT)
    CreatedAt = Column(DateTime, nullable=False, default=_now)
    SubmittedAt = Column(DateTime, nullable=True)
    UpdatedAt = Column(DateTime, nullable=True)
    ResolvedAt = Column(DateTime, nullable=True)
    ResolverId = Column(BigInteger, nullable=True)
    ResolutionReason = Column(UnicodeText, nullable=True)

    answers = relationship(
        "ApplicationAnswer",
        back_populates="application",
        cascade="all, delete, delete-orphan",
        order_by="ApplicationAnswer.QuestionIndex",
    )
    actions = relationship(
        "ReviewAction",
        back_populates="application",
        cascade="all, delete, delete-orphan",
        order_by="ReviewAction.Id",
    )

    @classmethod
    def get_by_id(cls, application_id: str, session):
        """Returns an application by its primary key."""
        return session.query(cls).filter(cls.Id == application_id).first()

    @classmethod
    def get_draft(cls, guild_id: int, user_id: int, session):
        """Returns the user's draft in the guild, or None."""
        return (
            session.query(cls)
            .filter(cls.GuildId == guild_id, cls.UserId == user_id, cls.Status == ApplicationStatus.DRAFT)
            .first()
        )

    @classmethod
    def get_unresolved(cls, guild_id: int, user_id: int, session):
        """Returns the user's submitted or needs-info application in the guild, or None."""
        return (
            session.query(cls)
            .filter(cls.GuildId == guild_id, cls.UserId == user_id, cls.Status.in_(UNRESOLVED_STATUSES))
            .first()
        )

    @classmethod
    def get_by_user(cls, guild_id: int, user_id: int, session):
        """Returns all applications by a user in a guild, newest first."""
        return (
            session.query(cls)
            .filter(cls.GuildId == guild_id, cls.UserId == user_id)
            .order_by(cls.CreatedAt.desc())
            .all()
        )

    @classmethod
    def get_or_create_draft(cls, guild_id: int, user_id: int, session):
        """Returns the user's draft, creating one if absent.

        Raises ActiveApplicationError if an unresolved application already exists.
        A concurrent insert that trips the one-draft index is recovered by
        re-reading the winner's draft.
        """
        draft = cls.get_draft(guild_id, user_id, session)
        if draft is not None:
            return draft

        if cls.get_unresolved(guild_id, user_id, session) is not None:
            raise ActiveApplicationError("You already have a submitted application.")

        draft = cls(GuildId=guild_id, UserId=user_id, Status=ApplicationStatus.DRAFT, CreatedAt=_now())
        try:
            with session.begin_nested():
                session.add(draft)
        except IntegrityError:
            draft = cls.get_draft(guild_id, user_id, session)
            if draft is None:
                raise
        return draft

    @classmethod
    def touch_draft(cls, application_id: str, session) -> bool:
        """Bump a draft's UpdatedAt. Returns False once it is no longer a draft.

        The conditional update also locks the row until the caller's transaction
        ends, so answers written after it cannot land on a submitted application.
        """
        result = session.execute(
            update(cls)
            .where(cls.Id == application_id, cls.Status == ApplicationStatus.DRAFT)
            .values(UpdatedAt=_now())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    @classmethod
    def submit(cls, application_id: str, session) -> bool:
        """Flip a draft to submitted. Returns False if there was no draft to submit."""
        now = _now()
        result = session.execute(
            update(cls)
            .where(cls.Id == application_id, cls.Status == ApplicationStatus.DRAFT)
            .values(Status=ApplicationStatus.SUBMITTED, SubmittedAt=now, UpdatedAt=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1


# One draft and one unresolved application per (guild, user). MySQL has no
# partial indexes, so there the repository checks are the only guard.
Index(
    "Application_OneDraft",
    Application.GuildId,
    Application.UserId,
    unique=True,
    sqlite_where=text("\"Status\" = 'draft'"),
    postgresql_where=text("\"Status\" = 'draft'"),
).ddl_if(dialect=("sqlite", "postgresql"))
Index(
    "Application_OneUnresolved",
    Application.GuildId,
    Application.UserId,
    unique=True,
    sqlite_where=text("\"Status\" IN ('submitted', 'needs_info')"),
    postgresql_where=text("\"Status\" IN ('submitted', 'needs_info')"),
).ddl_if(dialect=("sqlite", "postgresql"))


class ApplicationAnswer(db.BASE):
    """Database entity model for one question's answer within an application."""

    __tablename__ = "ApplicationAnswer"

    ApplicationId = Column(String(36), ForeignKey("Application.Id", ondelete="CASCADE"), primary_key=True)
    QuestionIndex = Column(Integer, primary_key=True)
    QuestionText = Column(UnicodeText, nullable=False)
    AnswerText = Column(UnicodeText, nullable=False)
    WrittenAt = Column(DateTime, nullable=False, default=_now)

    application = relationship("Application", back_populates="answers")

    @classmethod
    def get_by_application(cls, application_id: str, session):
        """Returns all answers for an application ordered by question index."""
        return (
            session.query(cls)
            .filter(cls.ApplicationId == application_id)
            .order_by(cls.QuestionIndex)
            .populate_existing()
            .all()
        )

    @classmethod
    def get_answer_map(cls, application_id: str, session) -> dict[int, str]:
        """Returns ``{question_index: answer_text}`` for an application."""
        return {a.QuestionIndex: a.AnswerText for a in cls.get_by_application(application_id, session)}

    @classmethod
    def upsert(cls, application_id: str, question_index: int, question_text: str, answer: str, session):
        """Insert or overwrite an answer in place, always refreshing WrittenAt."""
        values = {
            "ApplicationId": application_id,
            "QuestionIndex": question_index,
            "QuestionText": question_text,
            "AnswerText": truncate_answer(answer),
            "WrittenAt": _now(),
        }
        stmt = db.dialect_insert(session, cls.__table__).values(**values)
        if db.dialect_name(session) in ("mysql", "mariadb"):
            stmt = stmt.on_duplicate_key_update(
                QuestionText=stmt.inserted.QuestionText,
                AnswerText=stmt.inserted.AnswerText,
                WrittenAt=stmt.inserted.WrittenAt,
            )
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=[cls.ApplicationId, cls.QuestionIndex],
                set_={
                    "QuestionText": stmt.excluded.QuestionText,
                    "AnswerText": stmt.excluded.AnswerText,
                    "WrittenAt": stmt.excluded.WrittenAt,
                },
            )
        session.execute(stmt)


class ReviewAction(db.BASE):
    """Append-only log entry of one moderator decision or auxiliary action."""

    __tablename__ = "ReviewAction"
    __table_args__ = (Index("ReviewAction_ApplicationId", "ApplicationId"),)

    Id = Column(Integer, primary_key=True, autoincrement=True)
    ApplicationId = Column(String(36), ForeignKey("Application.Id", ondelete="CASCADE"), nullable=False)
    ModeratorId = Column(BigInteger, nullable=False)
    Action = Column(_enum(ReviewActionType), nullable=False)
    Reason = Column(UnicodeText, nullable=True)
    Meta = Column(JSON, nullable=True)
    CreatedAt = Column(DateTime, nullable=False, default=_now)

    application = relationship("Application", back_populates="actions")

    @classmethod
    def get_latest(cls, application_id: str, session, action: ReviewActionType | None = None):
        """Returns the newest action for an application, optionally of one type."""
        query = session.query(cls).filter(cls.ApplicationId == application_id)
        if action is not None:
            query = query.filter(cls.Action == action)
        return query.order_by(cls.Id.desc()).first()

    @classmethod
    def get_latest_decision(cls, application_id: str, session):
        """Returns the newest decision, skipping auxiliary entries like avatar source views."""
        return (
            session.query(cls)
            .filter(cls.ApplicationId == application_id, cls.Action != ReviewActionType.AVATAR_VIEWSRC)
            .order_by(cls.Id.desc())
            .first()
        )

    @classmethod
    def get_decisions(cls, application_id: str, session):
        """Returns every decision (not auxiliary) action, oldest first."""
        return (
            session.query(cls)
            .filter(cls.ApplicationId == application_id, cls.Action != ReviewActionType.AVATAR_VIEWSRC)
            .order_by(cls.Id)
            .all()
        )

    @classmethod
    def count(cls, application_id: str, session) -> int:
        return session.query(cls).filter(cls.ApplicationId == application_id).count()

    @classmethod
    def attach_meta(cls, review_action_id: int, meta: dict | None, session) -> None:
        """Attach side-effect outcome metadata to an already committed action."""
        session.execute(
            update(cls)
            .where(cls.Id == review_action_id)
            .values(Meta=meta)
            .execution_options(synchronize_session="fetch")
        )


class ThreadBridge(db.BASE):
    """Tracks the follow-up discussion thread opened by a need-info decision."""

    __tablename__ = "ThreadBridge"
    __table_args__ = (Index("ThreadBridge_GuildId_UserId_State", "GuildId", "UserId", "State"),)

    Id = Column(Integer, primary_key=True, autoincrement=True)
    GuildId = Column(BigInteger, nullable=False)
    UserId = Column(BigInteger, nullable=False)
    ThreadId = Column(BigInteger, nullable=False)
    State = Column(_enum(BridgeState), nullable=False, default=BridgeState.OPEN)
    CreatedAt = Column(DateTime, nullable=False, default=_now)
    ClosedAt = Column(DateTime, nullable=True)

    @classmethod
    def get_open(cls, guild_id: int, user_id: int, session):
        """Returns the newest open bridge for (guild, user), or None."""
        return (
            session.query(cls)
            .filter(cls.GuildId == guild_id, cls.UserId == user_id, cls.State == BridgeState.OPEN)
            .order_by(cls.Id.desc())
            .first()
        )

    @classmethod
    def open(cls, guild_id: int, user_id: int, thread_id: int, session):
        """Opens a bridge for (guild, user).

        If another bridge was opened concurrently, that one is returned instead,
        so callers must compare ``ThreadId`` with the thread they created.
        """
        bridge = cls(GuildId=guild_id, UserId=user_id, ThreadId=thread_id, State=BridgeState.OPEN, CreatedAt=_now())
        try:
            with session.begin_nested():
                session.add(bridge)
        except IntegrityError:
            winner = cls.get_open(guild_id, user_id, session)
            if winner is None:
                raise
            return winner
        return bridge

    @classmethod
    def close_by_thread(cls, thread_id: int, session) -> int:
        """Closes every open bridge pointing at a thread. Returns the number closed."""
        result = session.execute(
            update(cls)
            .where(cls.ThreadId == thread_id, cls.State == BridgeState.OPEN)
            .values(State=BridgeState.CLOSED, ClosedAt=_now())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount


# At most one open bridge per (guild, user).
Index(
    "ThreadBridge_OneOpen",
    ThreadBridge.GuildId,
    ThreadBridge.UserId,
    unique=True,
    sqlite_where=text("\"State\" = 'open'"),
    postgresql_where=text("\"State\" = 'open'"),
).ddl_if(dialect=("sqlite", "postgresql"))


class ReviewCard(db.BASE):
    """Maps an application to its live decision card message."""

    __tablename__ = "ReviewCard"

    ApplicationId = Column(String(36), ForeignKey("Application.Id", ondelete="CASCADE"), primary_key=True)
    ChannelId = Column(BigInteger, nullable=False)
    MessageId = Column(BigInteger, nullable=False)
    UpdatedAt = Column(DateTime, nullable=False, default=_now)

    @classmethod
    def get(cls, application_id: str, session):
        return session.query(cls).filter(cls.ApplicationId == application_id).first()

    @classmethod
    def get_by_message(cls, message_id: int, session):
        return session.query(cls).filter(cls.MessageId == message_id).first()

    @classmethod
    def upsert(cls, application_id: str, channel_id: int, message_id: int, session):
        card = cls.get(application_id, session)
        if card is None:
            card = cls(ApplicationId=application_id)
            session.add(card)
        card.ChannelId = channel_id
        card.MessageId = message_id
        card.UpdatedAt = _now()
        session.flush()
        return card


def reset_user_applications(guild_id: int, user_id: int, session, drafts_only: bool = True) -> int:
    """Delete a user's applications with everything hanging off them. Returns the number removed.

    With ``drafts_only`` only the in-progress draft goes; otherwise every
    application, answer, review action, card, avatar scan and thread bridge of
    the user in this guild is wiped. Runs inside the caller's transaction.
    """
    from models.avatar_scan import AvatarScan

    query = select(Application.Id).where(Application.GuildId == guild_id, Application.UserId == user_id)
    if drafts_only:
        query = query.where(Application.Status == ApplicationStatus.DRAFT)
    ids = list(session.scalars(query))
    if not ids:
        return 0

    session.execute(delete(ApplicationAnswer).where(ApplicationAnswer.ApplicationId.in_(ids)))
    session.execute(delete(ReviewAction).where(ReviewAction.ApplicationId.in_(ids)))
    session.execute(delete(ReviewCard).where(ReviewCard.ApplicationId.in_(ids)))
    session.execute(delete(AvatarScan).where(AvatarScan.ApplicationId.in_(ids)))
    session.execute(delete(Application).where(Application.Id.in_(ids)).execution_options(synchronize_session=False))
    if not drafts_only:
        session.execute(delete(ThreadBridge).where(ThreadBridge.GuildId == guild_id, ThreadBridge.UserId == user_id))
    session.expire_all()
    return len(ids)
