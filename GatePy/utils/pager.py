# -*- coding: utf-8 -*-
"""Splits a guild's question catalog into modal-sized pages.

Pure functions only. The gate views turn a :class:`PageDescriptor` into a
``discord.ui.Modal``; nothing here touches Discord or the database.
"""

from dataclasses import dataclass, field

INPUT_MAX_LENGTH = 1000
LABEL_MAX_LENGTH = 45
PLACEHOLDER_MAX_LENGTH = 100
DEFAULT_PAGE_SIZE = 5


@dataclass(frozen=True)
class Question:
    index: int
    prompt: str
    required: bool = True

    @classmethod
    def from_row(cls, row) -> "Question":
        return cls(index=row.QuestionIndex, prompt=row.Prompt, required=bool(row.Required))


@dataclass(frozen=True)
class QuestionPage:
    page_index: int
    questions: tuple[Question, ...]


@dataclass(frozen=True)
class PageInput:
    custom_id: str
    question_index: int
    label: str
    placeholder: str | None
    required: bool
    default: str | None
    max_length: int = INPUT_MAX_LENGTH


@dataclass(frozen=True)
class PageDescriptor:
    custom_id: str
    title: str
    page_index: int
    inputs: tuple[PageInput, ...] = field(default_factory=tuple)


def paginate(questions, page_size: int = DEFAULT_PAGE_SIZE) -> list[QuestionPage]:
    """Group ordered questions into pages of at most ``page_size``."""
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    questions = list(questions)
    return [
        QuestionPage(page_index=n, questions=tuple(questions[start : start + page_size]))
        for n, start in enumerate(range(0, len(questions), page_size))
    ]


def page_for_question(pages: list[QuestionPage], question_index: int) -> int | None:
    """Return the page index holding ``question_index``, or None."""
    for page in pages:
        if any(q.index == question_index for q in page.questions):
            return page.page_index
    return None


def input_label(question: Question) -> str:
    if not question.prompt:
        return f"Question {question.index + 1}"
    if len(question.prompt) > LABEL_MAX_LENGTH:
        return f"{question.prompt[: LABEL_MAX_LENGTH - 3]}..."
    return question.prompt


def modal_custom_id(page_index: int) -> str:
    return f"v1:modal:p{page_index}"


def input_custom_id(question_index: int) -> str:
    return f"v1:q:{question_index}"


def build_page(page: QuestionPage, existing_answers: dict[int, str] | None = None) -> PageDescriptor:
    """Describe the inputs of one page, pre-filled from saved answers."""
    if not page.questions:
        raise ValueError("Cannot build a page without questions")
    existing_answers = existing_answers or {}

    inputs = []
    for question in page.questions:
        existing = existing_answers.get(question.index)
        inputs.append(
            PageInput(
                custom_id=input_custom_id(question.index),
                question_index=question.index,
                label=input_label(question),
                placeholder=question.prompt[:PLACEHOLDER_MAX_LENGTH] or None,
                required=question.required,
                default=existing[:INPUT_MAX_LENGTH] if existing else None,
            )
        )
    return PageDescriptor(
        custom_id=modal_custom_id(page.page_index),
        title=f"Gate Entry - Page {page.page_index + 1}",
        page_index=page.page_index,
        inputs=tuple(inputs),
    )
