from __future__ import annotations

from mockprep.session.models import Question, QuestionKind


QUESTION_BANK: dict[QuestionKind, list[str]] = {
    QuestionKind.BEHAVIORAL: [
        "Tell me about yourself and your background in software development.",
        "Describe a challenging project you've worked on and how you overcame obstacles.",
        "Tell me about a time you disagreed with a teammate. How did you resolve it?",
        "Describe a situation where you had to learn a new technology quickly.",
    ],
    QuestionKind.TECHNICAL: [
        "How would you implement a function to reverse a linked list?",
        "Write a function to find the two numbers in an array that add up to a target sum.",
        "Explain the difference between a process and a thread.",
        "How would you detect a cycle in a directed graph?",
    ],
}

# order used on the interview screen: behavioral opener, then alternating
DEFAULT_INTERVIEW: list[tuple[QuestionKind, str]] = [
    (QuestionKind.BEHAVIORAL, QUESTION_BANK[QuestionKind.BEHAVIORAL][0]),
    (QuestionKind.TECHNICAL, QUESTION_BANK[QuestionKind.TECHNICAL][0]),
    (QuestionKind.BEHAVIORAL, QUESTION_BANK[QuestionKind.BEHAVIORAL][1]),
    (QuestionKind.TECHNICAL, QUESTION_BANK[QuestionKind.TECHNICAL][1]),
]

SESSION_KINDS = ("mixed", QuestionKind.BEHAVIORAL.value, QuestionKind.TECHNICAL.value)


def build_question_set(kind: str = "mixed", count: int = 4) -> list[Question]:
    normalized = str(kind or "mixed").strip().lower()
    capped = max(1, min(int(count or 4), 8))

    if normalized == "mixed":
        pairs = list(DEFAULT_INTERVIEW)
        extras = [
            (QuestionKind.BEHAVIORAL, prompt) for prompt in QUESTION_BANK[QuestionKind.BEHAVIORAL][2:]
        ] + [
            (QuestionKind.TECHNICAL, prompt) for prompt in QUESTION_BANK[QuestionKind.TECHNICAL][2:]
        ]
        pairs.extend(extras)
    elif normalized in {QuestionKind.BEHAVIORAL.value, QuestionKind.TECHNICAL.value}:
        question_kind = QuestionKind(normalized)
        pairs = [(question_kind, prompt) for prompt in QUESTION_BANK[question_kind]]
    else:
        raise ValueError(f"unknown interview kind: {kind}")

    return [
        Question(index=position, prompt=prompt, kind=question_kind)
        for position, (question_kind, prompt) in enumerate(pairs[:capped])
    ]
