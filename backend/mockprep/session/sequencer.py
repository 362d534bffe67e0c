from __future__ import annotations

from typing import Sequence

from mockprep.session.errors import AtEnd
from mockprep.session.models import Question


class QuestionSequencer:
    def __init__(self, questions: Sequence[Question]):
        items = tuple(questions or ())
        if not items:
            raise ValueError("QuestionSequencer needs at least one question")
        self._questions = items
        self._cursor = 0

    @property
    def total(self) -> int:
        return len(self._questions)

    @property
    def questions(self) -> tuple[Question, ...]:
        return self._questions

    def index(self) -> int:
        return self._cursor

    def current(self) -> Question:
        return self._questions[self._cursor]

    def is_last(self) -> bool:
        return self._cursor >= len(self._questions) - 1

    def advance(self) -> Question:
        if self.is_last():
            raise AtEnd(self._cursor)
        self._cursor += 1
        return self._questions[self._cursor]
