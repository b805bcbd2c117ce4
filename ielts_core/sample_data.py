# IELTS sample tests - Authentic Format
# Based on the official Listening, Academic Reading and Writing structures

from ielts_core.models import Module, Question, Section, SubscriptionTier, TestContent

LISTENING_TEST = {
    "id": "listening-sample-1",
    "title": "Listening Practice Test 1",
    "time_limit": 30,  # minutes
    "audio_url": "/media/listening/sample-1.mp3",
    "audio_duration": 1500,  # seconds
    "parts": [
        {
            "part_number": 1,
            "title": "Section 1: Booking a Holiday Cottage",
            "instruction": "Complete the form below. Write NO MORE THAN TWO WORDS AND/OR A NUMBER for each answer.",
            "questions": [
                {"number": 1, "type": "form_completion", "question": "Name of cottage:", "correct": "Rose Cottage"},
                {"number": 2, "type": "form_completion", "question": "Nearest town:", "correct": "Paris", "accept": ["Paris France"]},
                {"number": 3, "type": "form_completion", "question": "Number of bedrooms:", "correct": "3", "accept": ["three"]},
                {
                    "number": 4,
                    "type": "multiple_choice",
                    "question": "The caller wants to arrive on",
                    "options": {"A": "Friday", "B": "Saturday", "C": "Sunday"},
                    "correct": "B",
                },
                {
                    "number": 5,
                    "type": "multiple_choice",
                    "question": "The deposit must be paid",
                    "options": {"A": "by card", "B": "in cash", "C": "by bank transfer"},
                    "correct": "C",
                },
            ],
        },
        {
            "part_number": 2,
            "title": "Section 2: City Museum Tour",
            "instruction": "Complete the notes below. Write ONE WORD ONLY for each answer.",
            "questions": [
                {"number": 6, "type": "note_completion", "question": "The museum was originally a", "correct": "factory"},
                {"number": 7, "type": "note_completion", "question": "The east wing displays old", "correct": "maps"},
                {"number": 8, "type": "note_completion", "question": "Visitors may not use a", "correct": "camera", "accept": ["flash"]},
                {
                    "number": 9,
                    "type": "multiple_choice",
                    "question": "The cafe is located",
                    "options": {"A": "on the ground floor", "B": "in the garden", "C": "on the roof"},
                    "correct": "C",
                },
                {
                    "number": 10,
                    "type": "multiple_choice",
                    "question": "The guided tour lasts",
                    "options": {"A": "45 minutes", "B": "one hour", "C": "90 minutes"},
                    "correct": "A",
                },
            ],
        },
    ],
}

READING_TEST = {
    "id": "reading-sample-1",
    "title": "Academic Reading Practice Test 1",
    "time_limit": 60,  # minutes
    "parts": [
        {
            "part_number": 1,
            "title": "Passage 1: The Rise of Remote Work",
            "instruction": "Do the following statements agree with the information given in the passage? Write TRUE, FALSE or NOT GIVEN.",
            "questions": [
                {"number": 1, "type": "true_false_not_given", "question": "Remote work was common before 2020.", "correct": "FALSE"},
                {"number": 2, "type": "true_false_not_given", "question": "The pandemic forced companies to adopt remote policies.", "correct": "TRUE"},
                {"number": 3, "type": "true_false_not_given", "question": "Most workers prefer working from home.", "correct": "NOT GIVEN"},
                {"number": 4, "type": "sentence_completion", "question": "Many companies now follow a ______ model.", "correct": "hybrid"},
            ],
        },
        {
            "part_number": 2,
            "title": "Passage 2: Living Sustainably",
            "instruction": "Complete the summary below. Choose NO MORE THAN TWO WORDS from the passage for each answer.",
            "questions": [
                {"number": 5, "type": "summary_completion", "question": "Beef production generates greenhouse ______.", "correct": "gas emissions", "accept": ["emissions"]},
                {"number": 6, "type": "summary_completion", "question": "Rainwater can be collected for ______.", "correct": "gardens"},
                {
                    "number": 7,
                    "type": "multiple_choice",
                    "question": "According to the writer, reducing consumption means",
                    "options": {"A": "buying cheaper goods", "B": "choosing quality over quantity", "C": "avoiding shops"},
                    "correct": "B",
                },
                {"number": 8, "type": "sentence_completion", "question": "Solar panels and LED ______ reduce energy use.", "correct": "bulbs"},
            ],
        },
    ],
}

WRITING_TEST = {
    "id": "writing-sample-1",
    "title": "Academic Writing Practice Test 1",
    "time_limit": 60,  # minutes
    "parts": [
        {
            "part_number": 1,
            "title": "Task 1",
            "instruction": "You should spend about 20 minutes on this task. Write at least 150 words.",
            "questions": [
                {
                    "number": 1,
                    "type": "task_1_academic",
                    "question": "The chart shows household energy use in three countries in 2020. Summarise the information by selecting and reporting the main features.",
                },
            ],
        },
        {
            "part_number": 2,
            "title": "Task 2",
            "instruction": "You should spend about 40 minutes on this task. Write at least 250 words.",
            "questions": [
                {
                    "number": 2,
                    "type": "task_2",
                    "question": "Some people think remote work benefits both employers and employees. To what extent do you agree or disagree?",
                },
            ],
        },
    ],
}


def build_test(data, module):
    """Convert a sample test definition into TestContent."""
    sections = []
    for part in data["parts"]:
        section_id = f"{data['id']}-s{part['part_number']}"
        questions = [
            Question(
                id=f"{data['id']}-q{q['number']}",
                section_id=section_id,
                question_number=q["number"],
                question_type=q["type"],
                correct_answer=q.get("correct", ""),
                acceptable_answers=tuple(q.get("accept", ())),
                prompt=q["question"],
                options=q.get("options"),
            )
            for q in part["questions"]
        ]
        sections.append(Section(
            id=section_id,
            number=part["part_number"],
            title=part["title"],
            instructions=part["instruction"],
            questions=questions,
        ))

    return TestContent(
        id=data["id"],
        module=module,
        title=data["title"],
        time_limit_seconds=data["time_limit"] * 60,
        sections=sections,
        audio_url=data.get("audio_url"),
        audio_duration=data.get("audio_duration", 0),
    )


SAMPLE_TESTS = [
    (LISTENING_TEST, Module.LISTENING),
    (READING_TEST, Module.READING),
    (WRITING_TEST, Module.WRITING),
]


def load_sample_tests(store):
    for data, module in SAMPLE_TESTS:
        store.add_test(build_test(data, module))


# Demo learners, one per subscription tier
SAMPLE_USERS = {
    "free-user": SubscriptionTier.FREE,
    "premium-user": SubscriptionTier.PREMIUM,
    "enterprise-user": SubscriptionTier.ENTERPRISE,
}


def load_sample_users(store):
    for user_id, tier in SAMPLE_USERS.items():
        store.upsert_user(user_id, tier)
