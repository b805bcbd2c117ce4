"""Answer checking for objectively scored questions."""

from __future__ import annotations

import re
from dataclasses import dataclass

from ielts_core.models import Question

# Question types answered by picking a label (A/B/C, TRUE/FALSE/NOT GIVEN, ...)
EXACT_CHOICE_TYPES = frozenset({
    "multiple_choice",
    "multiple_choice_inference",
    "true_false_not_given",
    "yes_no_not_given",
    "matching",
    "matching_headings",
    "matching_features",
    "matching_sentence_endings",
    "classification",
    "map_plan_labelling",
    "diagram_labelling",
})

# Question types answered with free words from the passage/recording
COMPLETION_TYPES = frozenset({
    "sentence_completion",
    "summary_completion",
    "note_completion",
    "table_completion",
    "flow_chart_completion",
    "form_completion",
    "fill_blank",
    "short_answer",
})

_PUNCTUATION = re.compile(r"[.,;:!?]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class Evaluation:
    is_correct: bool
    points_earned: int
    skipped: bool = False


def is_completion_type(question_type):
    return question_type.lower() in COMPLETION_TYPES


def normalize_answer(text, question_type, case_sensitive=False):
    """Apply the comparison normalisation used for the given question type.

    Completion answers drop punctuation and collapse runs of whitespace so
    that "the  river." and "the river" compare equal. There is no fuzzy
    matching: spelling mistakes are still wrong.
    """
    value = (text or "").strip()
    if is_completion_type(question_type):
        value = _WHITESPACE.sub(" ", _PUNCTUATION.sub("", value)).strip()
    if not case_sensitive:
        value = value.lower()
    return value


def accepted_forms(question):
    forms = [question.correct_answer, *question.acceptable_answers]
    return {
        normalize_answer(form, question.question_type, question.case_sensitive)
        for form in forms
        if form is not None
    }


def evaluate(user_answer, question: Question) -> Evaluation:
    if not (user_answer or "").strip():
        return Evaluation(is_correct=False, points_earned=0, skipped=True)

    candidate = normalize_answer(user_answer, question.question_type, question.case_sensitive)
    is_correct = bool(candidate) and candidate in accepted_forms(question)
    return Evaluation(
        is_correct=is_correct,
        points_earned=question.points if is_correct else 0,
    )
