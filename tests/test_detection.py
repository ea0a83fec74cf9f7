import unittest
from datetime import datetime, timedelta, timezone
from unittest import TestCase

from curious_sync.detection import (
    KeywordAssignmentDetector,
    clean_title,
    detect_assignment_type,
    detect_priority,
    detect_submission_type,
    detection_statistics,
    keyword_score,
    subject_codes,
    temporal_score,
    title_pattern_score,
)
from curious_sync.models import NormalizedCalendarEvent


TUESDAY_NIGHT = datetime(2026, 10, 20, 23, 59, tzinfo=timezone.utc)
SATURDAY_NOON = datetime(2026, 10, 24, 12, 0, tzinfo=timezone.utc)


def _event(title: str, description: str = "", start: datetime = TUESDAY_NIGHT, calendar_id: str = "primary"):
    return NormalizedCalendarEvent(
        id="evt-1",
        provider="google",
        calendar_id=calendar_id,
        title=title,
        description=description,
        start=start,
        end=start + timedelta(minutes=30),
    )


class ScoringHelperTests(TestCase):
    def test_keyword_score_takes_best_group(self) -> None:
        score = keyword_score("homework 3 due submit on canvas")

        self.assertAlmostEqual(score, 2 / 6 * 0.7)

    def test_short_keywords_match_whole_words_only(self) -> None:
        self.assertEqual(keyword_score("shwarma night"), 0.0)
        self.assertGreater(keyword_score("hw 4"), 0.0)

    def test_title_patterns(self) -> None:
        self.assertAlmostEqual(title_pattern_score("Homework 3 due"), 0.4)
        self.assertEqual(title_pattern_score("Lunch with Sam"), 0.0)

    def test_subject_codes_are_deduplicated(self) -> None:
        self.assertEqual(subject_codes("CS 101 Midterm"), ["CS 101"])
        self.assertEqual(subject_codes("CS101 lab"), ["CS101"])

    def test_temporal_score_favours_late_weekday_deadlines(self) -> None:
        self.assertAlmostEqual(temporal_score(_event("x", start=TUESDAY_NIGHT)), 0.6)
        self.assertEqual(temporal_score(_event("x", start=SATURDAY_NOON)), 0.0)

    def test_type_priority_and_submission(self) -> None:
        self.assertEqual(detect_assignment_type("cs 101 midterm"), "exam")
        self.assertEqual(detect_assignment_type("quiz 2"), "quiz")
        self.assertEqual(detect_assignment_type("reading"), "assignment")
        self.assertEqual(detect_priority("final exam"), "high")
        self.assertEqual(detect_priority("optional reading"), "low")
        self.assertEqual(detect_priority("worksheet"), "medium")
        self.assertEqual(detect_submission_type("bring a hard copy"), "paper")
        self.assertEqual(detect_submission_type("worksheet"), "online")

    def test_clean_title_strips_prefixes(self) -> None:
        self.assertEqual(clean_title("HW: Chapter 4"), "Chapter 4")
        self.assertEqual(clean_title("Homework - Chapter 4"), "Chapter 4")
        self.assertEqual(clean_title("Due: Lab report"), "Lab report")
        self.assertEqual(clean_title("Homework 3 due"), "Homework 3 due")
        self.assertEqual(clean_title("Homework:"), "Homework:")
        self.assertEqual(clean_title("Due"), "Due")


class KeywordAssignmentDetectorTests(TestCase):
    def setUp(self) -> None:
        self.detector = KeywordAssignmentDetector()

    def test_detects_homework_on_course_calendar(self) -> None:
        event = _event(
            "Homework 3 due",
            "Submit on Canvas, 10 points",
            calendar_id="cs101@university.edu",
        )

        result = self.detector.detect(event)

        self.assertTrue(result.detected)
        self.assertAlmostEqual(result.confidence, 0.4067, places=3)
        self.assertTrue(result.requires_review)
        self.assertEqual(result.suggested_data["title"], "Homework 3 due")
        self.assertEqual(result.suggested_data["assignment_type"], "assignment")
        self.assertEqual(result.suggested_data["submission_type"], "online")
        self.assertEqual(result.suggested_data["priority"], "medium")
        self.assertEqual(result.suggested_data["due_date"], TUESDAY_NIGHT)
        self.assertEqual(
            result.detection_reasons,
            ["Comes from an academic calendar", "Contains assignment-related context clues"],
        )

    def test_ignores_social_events(self) -> None:
        result = self.detector.detect(_event("Lunch with Sam", start=SATURDAY_NOON))

        self.assertFalse(result.detected)
        self.assertEqual(result.suggested_data, {})

    def test_threshold_is_configurable(self) -> None:
        strict = KeywordAssignmentDetector(minimum_confidence=0.9)

        result = strict.detect(_event("Homework 3 due", "Submit on Canvas", calendar_id="cs101@university.edu"))

        self.assertFalse(result.detected)

    def test_statistics(self) -> None:
        results = self.detector.detect_many(
            [
                _event("Homework 3 due", "Submit on Canvas, 10 points", calendar_id="cs101@university.edu"),
                _event("Lunch with Sam", start=SATURDAY_NOON),
            ]
        )

        stats = detection_statistics(results)

        self.assertEqual(stats["total_events"], 2)
        self.assertEqual(stats["assignments_detected"], 1)
        self.assertEqual(stats["detection_rate"], 0.5)
        self.assertEqual(stats["high_confidence_count"], 0)
        self.assertEqual(stats["needs_review_count"], 1)
        self.assertEqual(detection_statistics([])["average_confidence"], 0.0)


if __name__ == "__main__":
    unittest.main()
