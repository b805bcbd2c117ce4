"""Turns per-question evaluations into section, question-type and band statistics."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field

from ielts_core import evaluator
from ielts_core.band_scores import MAX_BAND, band_for_raw_score, combine_writing_bands
from ielts_core.models import Answer, Module, TestContent

STRENGTH_THRESHOLD = 70.0
WEAKNESS_THRESHOLD = 50.0

IMPROVEMENT_STRATEGIES = {
    Module.LISTENING: {
        "gist": [
            "Practice identifying main ideas without focusing on every detail",
            "Listen to news summaries and podcasts to improve overall comprehension",
            "Focus on understanding the general purpose and context of conversations",
        ],
        "specific": [
            "Practice scanning techniques while listening",
            "Focus on keywords and numbers in audio materials",
            "Use prediction skills before listening to anticipate information",
        ],
        "opinion": [
            "Practice identifying tone and attitude in speech",
            "Focus on intonation patterns and stress",
            "Listen to discussions and debates to understand different viewpoints",
        ],
    },
    Module.READING: {
        "gist": [
            "Skim each passage for its main idea before reading the questions",
            "Read short articles daily and summarise them in one sentence",
        ],
        "specific": [
            "Practice scanning for names, dates and numbers",
            "Underline keywords in questions and locate their paraphrases",
        ],
        "opinion": [
            "Practice distinguishing the writer's claims from reported views",
            "Work on inference questions with longer academic passages",
        ],
    },
    Module.WRITING: {
        "gist": [
            "Plan every answer with a clear position and one idea per paragraph",
            "Review basic sentence structures and subject-verb agreement",
        ],
        "specific": [
            "Support each main point with a specific example",
            "Use a wider range of linking words between paragraphs",
        ],
        "opinion": [
            "Vary complex sentence forms while keeping accuracy",
            "Refine word choice with less common, precise vocabulary",
        ],
    },
}

WEAK_AREA_RECOMMENDATION = "Focus on your identified weak areas through targeted practice"


@dataclass(slots=True)
class ScoreReport:
    evaluations: dict[str, evaluator.Evaluation]
    score: int
    total_score: int
    correct_answers: int
    wrong_answers: int
    skipped_answers: int
    answered_questions: int
    total_questions: int
    band_score: float
    percentage: float
    completion_rate: float
    section_scores: dict[str, dict[str, float]]
    question_type_scores: dict[str, dict[str, float]]
    strengths: list[str]
    weaknesses: list[str]
    audio_utilization: float = 0.0
    recommendations: list[str] = field(default_factory=list)
    next_level_suggestion: str = ""
    task_bands: dict[str, float] = field(default_factory=dict)


def _pct(part, whole):
    return round(part / whole * 100, 2) if whole else 0.0


def percentage(correct, total):
    return _pct(correct, total)


def completion_rate(answered, total):
    return _pct(answered, total)


def audio_utilization(audio_time_spent, audio_duration):
    """Share of the recording the learner listened to, capped at 100."""
    if not audio_duration:
        return 0.0
    return round(min(audio_time_spent / audio_duration * 100, 100.0), 2)


def is_answered(answer):
    return answer is not None and bool((answer.user_answer or "").strip())


def evaluate_all(content: TestContent, answers: dict[str, Answer]):
    return {
        question.id: evaluator.evaluate(
            answers[question.id].user_answer if question.id in answers else "",
            question,
        )
        for question in content.questions
    }


def _grouping_scores(content, evaluations, key_for):
    scores = OrderedDict()
    for section in content.sections:
        for question in section.questions:
            key = key_for(section, question)
            bucket = scores.setdefault(key, {"correct": 0, "total": 0})
            bucket["total"] += 1
            if evaluations[question.id].is_correct:
                bucket["correct"] += 1
    for bucket in scores.values():
        bucket["percentage"] = _pct(bucket["correct"], bucket["total"])
    return dict(scores)


def strengths_and_weaknesses(section_scores, question_type_scores):
    strengths = []
    weaknesses = []

    for name, stats in section_scores.items():
        if stats["percentage"] >= STRENGTH_THRESHOLD:
            strengths.append(f"Strong performance in {name}")
        elif stats["percentage"] < WEAKNESS_THRESHOLD:
            weaknesses.append(f"Needs improvement in {name}")

    for name, stats in question_type_scores.items():
        label = name.replace("_", " ").lower()
        if stats["percentage"] >= STRENGTH_THRESHOLD:
            strengths.append(f"Good at {label} questions")
        elif stats["percentage"] < WEAKNESS_THRESHOLD:
            weaknesses.append(f"Struggles with {label} questions")

    return strengths, weaknesses


def recommendations_for(module, band_score, weaknesses):
    strategies = IMPROVEMENT_STRATEGIES[module]
    recommendations = []
    if band_score < 5.0:
        recommendations.extend(strategies["gist"])
    elif band_score < 6.5:
        recommendations.extend(strategies["specific"])
    elif band_score < 8.0:
        recommendations.extend(strategies["opinion"])

    if weaknesses:
        recommendations.append(WEAK_AREA_RECOMMENDATION)
    return recommendations


def next_level_suggestion(module, band_score):
    skill = module.label
    if band_score < 5.0:
        return f"Practice basic {skill} comprehension"
    if band_score < 6.5:
        return f"Work on intermediate {skill} skills"
    if band_score < 7.5:
        return f"Focus on advanced {skill} techniques"
    if band_score < 8.5:
        return f"Refine expert-level {skill} skills"
    return "Maintain excellence through regular practice"


def aggregate(content: TestContent, answers: dict[str, Answer], section_label="section",
              audio_time_spent=0):
    """Score a listening or reading attempt."""
    evaluations = evaluate_all(content, answers)
    total_questions = content.total_questions

    correct = sum(1 for e in evaluations.values() if e.is_correct)
    skipped = sum(1 for e in evaluations.values() if e.skipped)
    wrong = total_questions - correct - skipped
    answered = sum(1 for q in content.questions if is_answered(answers.get(q.id)))

    section_scores = _grouping_scores(
        content, evaluations, lambda s, q: f"{section_label}{s.number}"
    )
    question_type_scores = _grouping_scores(
        content, evaluations, lambda s, q: q.question_type
    )
    strengths, weaknesses = strengths_and_weaknesses(section_scores, question_type_scores)

    band_score = band_for_raw_score(correct)
    return ScoreReport(
        evaluations=evaluations,
        score=sum(e.points_earned for e in evaluations.values()),
        total_score=sum(q.points for q in content.questions),
        correct_answers=correct,
        wrong_answers=wrong,
        skipped_answers=skipped,
        answered_questions=answered,
        total_questions=total_questions,
        band_score=band_score,
        percentage=percentage(correct, total_questions),
        completion_rate=completion_rate(answered, total_questions),
        section_scores=section_scores,
        question_type_scores=question_type_scores,
        strengths=strengths,
        weaknesses=weaknesses,
        audio_utilization=(
            audio_utilization(audio_time_spent, content.audio_duration)
            if content.module is Module.LISTENING else 0.0
        ),
        recommendations=recommendations_for(content.module, band_score, weaknesses),
        next_level_suggestion=next_level_suggestion(content.module, band_score),
    )


def aggregate_writing(content: TestContent, answers: dict[str, Answer], task_bands):
    """Score a writing attempt from its two independently banded tasks.

    ``task_bands`` maps question id to the band awarded for that task. The
    first section is Task 1 and the second Task 2. Percentage is expressed
    against the maximum band since writing has no answer key.
    """
    tasks = content.questions
    if len(tasks) != 2:
        raise ValueError(f"writing test {content.id} must have exactly two tasks, found {len(tasks)}")
    task1, task2 = tasks
    band1 = task_bands.get(task1.id, 0.0)
    band2 = task_bands.get(task2.id, 0.0)
    band_score = combine_writing_bands(band1, band2)

    answered = sum(1 for q in tasks if is_answered(answers.get(q.id)))
    evaluations = {
        q.id: evaluator.Evaluation(
            is_correct=is_answered(answers.get(q.id)),
            points_earned=0,
            skipped=not is_answered(answers.get(q.id)),
        )
        for q in tasks
    }

    section_scores = {}
    for name, band in (("task1", band1), ("task2", band2)):
        section_scores[name] = {"band": band, "percentage": _pct(band, MAX_BAND)}
    strengths, weaknesses = strengths_and_weaknesses(section_scores, {})

    return ScoreReport(
        evaluations=evaluations,
        score=answered,
        total_score=len(tasks),
        correct_answers=answered,
        wrong_answers=0,
        skipped_answers=len(tasks) - answered,
        answered_questions=answered,
        total_questions=len(tasks),
        band_score=band_score,
        percentage=_pct(band_score, MAX_BAND),
        completion_rate=completion_rate(answered, len(tasks)),
        section_scores=section_scores,
        question_type_scores={},
        strengths=strengths,
        weaknesses=weaknesses,
        recommendations=recommendations_for(Module.WRITING, band_score, weaknesses),
        next_level_suggestion=next_level_suggestion(Module.WRITING, band_score),
        task_bands={"task1": band1, "task2": band2},
    )
