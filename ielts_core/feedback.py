"""AI commentary and writing task banding, with offline fallbacks.

The session core treats the commentary as opaque JSON: it is stored on the
result and never read back. Writing bands, however, feed the score, so a
failed grading call is raised rather than papered over.
"""

from __future__ import annotations

import json
import logging

from openai import OpenAI, OpenAIError

from ielts_core.band_scores import clamp_band, round_to_nearest_half
from ielts_core.models import Module

logger = logging.getLogger(__name__)

FEEDBACK_TEMPLATES = [
    (8.0, "Excellent performance! You demonstrate strong control of both main ideas and specific details."),
    (6.5, "Good performance with room for improvement in specific areas. Focus on the identified weak points."),
    (5.0, "Your skills are developing. Consistent practice with targeted exercises will help improve your score."),
    (0.0, "Focus on building fundamental skills through regular practice with authentic materials."),
]

SYSTEM_PROMPTS = {
    Module.LISTENING: (
        "You are an expert IELTS Listening examiner. Analyse the structured test "
        "performance you are given (section scores, question type scores, audio "
        "utilization, time spent) and respond in JSON with keys: summary, "
        "section_analysis, strengths, weaknesses, study_plan."
    ),
    Module.READING: (
        "You are an expert IELTS Reading examiner. Analyse the structured test "
        "performance you are given (passage scores, question type scores, skipped "
        "answers) and respond in JSON with keys: summary, passage_analysis, "
        "strengths, weaknesses, study_plan."
    ),
    Module.WRITING: (
        "You are an expert IELTS Writing examiner. Given the task bands and word "
        "counts, respond in JSON with keys: summary, task1_comments, "
        "task2_comments, study_plan."
    ),
}

WRITING_GRADER_PROMPT = """You are an IELTS Writing examiner. Evaluate the response using the official criteria:
1. Task Achievement/Response (25%)
2. Coherence and Cohesion (25%)
3. Lexical Resource (25%)
4. Grammatical Range and Accuracy (25%)
Respond in JSON format:
{
    "overall_band": <number 0-9 in steps of 0.5>,
    "task_achievement": <number>,
    "coherence_cohesion": <number>,
    "lexical_resource": <number>,
    "grammatical_range": <number>
}"""

MIN_WORDS = {1: 150, 2: 250}

LINKING_WORDS = ("because", "however", "therefore", "although", "moreover", "whereas")


class WritingGradingError(Exception):
    pass


def make_client(api_key):
    if not api_key:
        return None
    return OpenAI(api_key=api_key)


def fallback_feedback(band_score, recommendations=()):
    template = next(text for threshold, text in FEEDBACK_TEMPLATES if band_score >= threshold)
    return {
        "summary": template,
        "band_score": band_score,
        "recommendations": list(recommendations),
        "source": "template",
    }


def parse_ai_content(content):
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        return {"summary": content}
    return parsed if isinstance(parsed, dict) else {"summary": parsed}


class FeedbackService:
    def __init__(self, client=None, model="gpt-4o-mini", temperature=0.3, max_tokens=1200):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate(self, module: Module, data, recommendations=()):
        """Return commentary for the structured evaluation ``data``."""
        band_score = data.get("band_score", 0.0)
        if self.client is None:
            return fallback_feedback(band_score, recommendations)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPTS[module]},
                    {"role": "user", "content": json.dumps(data, default=str)},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            logger.warning("AI feedback generation failed, using template: %s", e)
            return fallback_feedback(band_score, recommendations)

        return parse_ai_content(response.choices[0].message.content)


def heuristic_band(text, task_number):
    """Length-and-structure estimate used when no AI grader is configured."""
    words = text.split()
    if not words:
        return 0.0
    min_words = MIN_WORDS.get(task_number, 150)
    band = 3.0 + min(len(words) / min_words, 1.0) * 2.5

    lowered = text.lower()
    if any(word in lowered for word in LINKING_WORDS):
        band += 0.5
    if text.strip()[0].isupper() and text.rstrip().endswith((".", "!", "?")):
        band += 0.5
    if text.count("\n\n") >= 2:
        band += 0.5
    if "," in text:
        band += 0.5
    return round_to_nearest_half(clamp_band(band))


class WritingGrader:
    def __init__(self, client=None, model="gpt-4o-mini"):
        self.client = client
        self.model = model

    def grade(self, task_number, prompt, response_text):
        """Band a single writing task, rounded to the nearest half band."""
        if not (response_text or "").strip():
            return 0.0
        if self.client is None:
            return heuristic_band(response_text, task_number)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": WRITING_GRADER_PROMPT},
                    {
                        "role": "user",
                        "content": f"Task {task_number} prompt: {prompt}\n\nCandidate's response:\n{response_text}",
                    },
                ],
                response_format={"type": "json_object"},
            )
            evaluation = json.loads(response.choices[0].message.content)
            band = float(evaluation["overall_band"])
        except (OpenAIError, ValueError, KeyError, TypeError) as e:
            raise WritingGradingError(f"Could not grade writing task {task_number}: {e}") from e

        return round_to_nearest_half(clamp_band(band))
