"""Tests for answer comparison and score helpers."""

from lingo.grading import (
    compare_answers,
    comprehension_score,
    estimate_reading_time,
    extract_relevant_transcript_part,
    fallback_answer_feedback,
    grade_answers,
    normalize_question_type,
    normalize_questions,
    overall_feedback,
    public_questions,
    word_overlap_ratio,
)


class TestNormalizeQuestionType:
    """Question type aliases."""

    def test_multiple_choice_variants(self):
        assert normalize_question_type("Multiple Choice") == "multiple-choice"
        assert normalize_question_type("mcq") == "multiple-choice"

    def test_true_false_variants(self):
        assert normalize_question_type("True/False") == "true-false"
        assert normalize_question_type("true_false") == "true-false"

    def test_fill_blank_variants(self):
        assert normalize_question_type("fill_in_the_blank") == "fill-blank"
        assert normalize_question_type("Fill Blank") == "fill-blank"

    def test_unknown_defaults_to_multiple_choice(self):
        assert normalize_question_type("essay") == "multiple-choice"
        assert normalize_question_type(None) == "multiple-choice"


class TestCompareAnswers:
    """Lenient answer matching."""

    def test_empty_answer_is_wrong(self):
        assert compare_answers("", "Paris", "multiple-choice") is False
        assert compare_answers("   ", "Paris", "fill-blank") is False

    def test_multiple_choice_is_case_insensitive(self):
        assert compare_answers("paris", "Paris", "multiple-choice") is True
        assert compare_answers("London", "Paris", "multiple-choice") is False

    def test_true_false_accepts_letters(self):
        assert compare_answers("a", "true", "true-false") is True
        assert compare_answers("B", "False", "true-false") is True
        assert compare_answers("true", "false", "true-false") is False

    def test_fill_blank_ignores_spacing_and_case(self):
        assert compare_answers("The  big red   dog", "the big red dog", "fill-blank") is True

    def test_fill_blank_accepts_containment(self):
        assert compare_answers("red dog", "the red dog", "fill-blank") is True
        assert compare_answers("the red dog barked", "red dog", "fill-blank") is True

    def test_fill_blank_word_overlap_threshold(self):
        # 5 of 6 words in common
        assert compare_answers("she went to the market yesterday", "she went to the shop yesterday", "fill-blank") is True
        assert compare_answers("she went home", "she went to the shop yesterday", "fill-blank") is False

    def test_word_overlap_ratio(self):
        assert word_overlap_ratio("a b c d", "a b c e") == 0.75


class TestScores:
    """Comprehension score and feedback buckets."""

    def test_comprehension_score_rounds(self):
        assert comprehension_score(2, 3) == 67
        assert comprehension_score(0, 0) == 0

    def test_overall_feedback_buckets(self):
        assert overall_feedback(95).startswith("Excellent work!")
        assert overall_feedback(70).startswith("Good job!")
        assert overall_feedback(50).startswith("You're making progress.")
        assert overall_feedback(49).startswith("This was challenging.")

    def test_fallback_feedback(self):
        assert fallback_answer_feedback(True, "x") == "Correct answer!"
        assert fallback_answer_feedback(False, "x") == "Incorrect. The correct answer is: x"

    def test_reading_time_minimum_one_minute(self):
        assert estimate_reading_time(0) == 1
        assert estimate_reading_time(401) == 3


class TestTranscriptExcerpt:
    """Context window around an answer."""

    def test_window_around_answer(self):
        transcript = "a" * 200 + "answer" + "b" * 200
        part = extract_relevant_transcript_part(transcript, "answer")
        assert "answer" in part
        assert len(part) == 206

    def test_long_transcript_without_answer_is_truncated(self):
        part = extract_relevant_transcript_part("x" * 500, "missing")
        assert part == "x" * 300 + "..."

    def test_short_transcript_returned_whole(self):
        assert extract_relevant_transcript_part("short text", "missing") == "short text"


class TestQuestionHelpers:
    """Normalisation of generated questions."""

    def test_normalize_questions_assigns_ids_and_drops_invalid(self):
        questions = normalize_questions([
            {"type": "mcq", "question": "Q1?", "options": ["a", "b"], "correct_answer": "a"},
            {"question": "", "correct_answer": "x"},
            {"type": "fill_blank", "question": "Q2?", "answer": "word"},
        ])
        assert [q["id"] for q in questions] == ["q1", "q2"]
        assert questions[1]["type"] == "fill-blank"
        assert questions[1]["correct_answer"] == "word"

    def test_public_questions_hide_answers(self):
        questions = normalize_questions([{"question": "Q?", "correct_answer": "a", "explanation": "because"}])
        hidden = public_questions(questions, reveal=False)
        assert "correct_answer" not in hidden[0]
        assert "explanation" not in hidden[0]
        assert public_questions(questions, reveal=True) == questions

    def test_grade_answers_skips_unknown_ids(self):
        questions = normalize_questions([{"question": "Q?", "correct_answer": "a"}])
        graded = grade_answers(questions, {"q1": "A", "q9": "b"})
        assert len(graded) == 1
        assert graded[0]["is_correct"] is True
