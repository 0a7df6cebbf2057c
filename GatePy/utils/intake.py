# -*- coding: utf-8 -*-
"""Draft intake: page navigation, answer persistence and final submission.

Both entry points run inside the caller's ``session_scope`` so a page's answers
and the submit flip commit together. Expected business conditions come back as
an ``IntakeStart``/``IntakeResult`` with a ``kind``; only infrastructure errors
raise.
"""

import enum
from dataclasses import dataclass, field

from models.application import Application, ApplicationAnswer
from models.gate_config import GateQuestion
from utils.errors import ActiveApplicationError
from utils.pager import PageDescriptor, Question, QuestionPage, build_page, page_for_question, paginate


class IntakeKind(str, enum.Enum):
    OK = "ok"
    NO_QUESTIONS = "no_questions"
    PAGE_UNAVAILABLE = "page_unavailable"
    ALREADY_SUBMITTED = "already_submitted"
    MISSING_REQUIRED = "missing_required"
    SAVED = "saved"
    INCOMPLETE = "incomplete"
    SUBMITTED = "submitted"
    NO_DRAFT = "no_draft"


@dataclass(frozen=True)
class IntakeStart:
    kind: IntakeKind
    application_id: str | None = None
    page: QuestionPage | None = None
    page_count: int = 0
    answers: dict[int, str] = field(default_factory=dict)

    @property
    def descriptor(self) -> PageDescriptor:
        return build_page(self.page, self.answers)


@dataclass(frozen=True)
class IntakeResult:
    kind: IntakeKind
    application_id: str | None = None
    page_index: int | None = None
    page_count: int = 0
    next_page: int | None = None
    target_page: int | None = None
    # 1-based question numbers, as shown to the applicant
    missing: tuple[int, ...] = ()


def load_questions(guild_id: int, session) -> list[Question]:
    return [Question.from_row(row) for row in GateQuestion.get_by_guild(guild_id, session)]


def _is_blank(value: str | None) -> bool:
    return not (value or "").strip()


def start_intake(session, guild_id: int, user_id: int, page_index: int = 0) -> IntakeStart:
    """Open (or resume) the user's draft at ``page_index``."""
    questions = load_questions(guild_id, session)
    if not questions:
        return IntakeStart(IntakeKind.NO_QUESTIONS)
    pages = paginate(questions)

    try:
        draft = Application.get_or_create_draft(guild_id, user_id, session)
    except ActiveApplicationError:
        return IntakeStart(IntakeKind.ALREADY_SUBMITTED, page_count=len(pages))

    if not 0 <= page_index < len(pages):
        return IntakeStart(IntakeKind.PAGE_UNAVAILABLE, application_id=draft.Id, page_count=len(pages))

    return IntakeStart(
        IntakeKind.OK,
        application_id=draft.Id,
        page=pages[page_index],
        page_count=len(pages),
        answers=ApplicationAnswer.get_answer_map(draft.Id, session),
    )


def _without_draft(session, guild_id: int, user_id: int, page_index: int, page_count: int) -> IntakeResult:
    if Application.get_unresolved(guild_id, user_id, session) is not None:
        return IntakeResult(IntakeKind.ALREADY_SUBMITTED, page_index=page_index, page_count=page_count)
    return IntakeResult(IntakeKind.NO_DRAFT, page_index=page_index, page_count=page_count)


def save_and_advance(session, guild_id: int, user_id: int, page_index: int, answers: dict[int, str]) -> IntakeResult:
    """Validate and store one page of answers, submitting after the last page.

    Nothing is written when a required answer on the page is blank. After the
    last page every required answer in the catalog is re-checked, since questions
    can be added while a draft is in progress.
    """
    questions = load_questions(guild_id, session)
    if not questions:
        return IntakeResult(IntakeKind.NO_QUESTIONS)
    pages = paginate(questions)
    if not 0 <= page_index < len(pages):
        return IntakeResult(IntakeKind.PAGE_UNAVAILABLE, page_index=page_index, page_count=len(pages))

    draft = Application.get_draft(guild_id, user_id, session)
    if draft is None:
        return _without_draft(session, guild_id, user_id, page_index, len(pages))

    page = pages[page_index]
    missing = tuple(q.index + 1 for q in page.questions if q.required and _is_blank(answers.get(q.index)))
    if missing:
        return IntakeResult(
            IntakeKind.MISSING_REQUIRED,
            application_id=draft.Id,
            page_index=page_index,
            page_count=len(pages),
            missing=missing,
        )

    if not Application.touch_draft(draft.Id, session):
        return _without_draft(session, guild_id, user_id, page_index, len(pages))

    for question in page.questions:
        ApplicationAnswer.upsert(draft.Id, question.index, question.prompt, answers.get(question.index, ""), session)

    if page_index < len(pages) - 1:
        return IntakeResult(
            IntakeKind.SAVED,
            application_id=draft.Id,
            page_index=page_index,
            page_count=len(pages),
            next_page=page_index + 1,
        )

    stored = ApplicationAnswer.get_answer_map(draft.Id, session)
    still_missing = [q for q in questions if q.required and _is_blank(stored.get(q.index))]
    if still_missing:
        target = page_for_question(pages, still_missing[0].index)
        return IntakeResult(
            IntakeKind.INCOMPLETE,
            application_id=draft.Id,
            page_index=page_index,
            page_count=len(pages),
            target_page=target if target is not None else 0,
            missing=tuple(q.index + 1 for q in still_missing),
        )

    if not Application.submit(draft.Id, session):
        return IntakeResult(IntakeKind.NO_DRAFT, application_id=draft.Id, page_index=page_index, page_count=len(pages))

    return IntakeResult(IntakeKind.SUBMITTED, application_id=draft.Id, page_index=page_index, page_count=len(pages))
