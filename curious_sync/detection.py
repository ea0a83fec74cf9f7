from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from curious_sync.models import NormalizedCalendarEvent


HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6
LOW_CONFIDENCE = 0.4
MINIMUM_CONFIDENCE = 0.3

# (keywords, weight, assignment type)
KEYWORD_GROUPS: dict[str, tuple[tuple[str, ...], float, str | None]] = {
    "assignment": (
        ("assignment", "homework", "hw", "essay", "paper", "report", "project", "lab report"),
        1.0,
        "assignment",
    ),
    "exam": (("exam", "test", "quiz", "midterm", "final", "examination"), 1.0, "exam"),
    "project": (("project", "presentation", "thesis", "capstone", "research"), 0.9, "project"),
    "lab": (("lab", "laboratory", "experiment", "practical"), 0.9, "lab"),
    "due": (("due", "deadline", "submit", "submission", "turn in", "hand in"), 0.7, None),
    "academic": (("class", "course", "lecture", "seminar", "workshop", "tutorial"), 0.5, None),
}

TITLE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(assignment|hw|homework)\s*\d+",
        r"\b(quiz|test|exam)\s*\d+",
        r"\b(lab|laboratory)\s*\d+",
        r"\b(project|paper)\s*\d+",
        r"\b(midterm|final)\b",
        r"\b(chapter|unit)\s*\d+",
        r"\bdue\b",
        r"\b\d{1,2}/\d{1,2}/\d{2,4}\b",
    )
)
SUBJECT_CODE_PATTERNS = (
    re.compile(r"\b[A-Z]{2,4}\s*-?\s*\d{2,4}\b"),
    re.compile(r"\b[A-Z]{2,4}\d{2,4}[A-Z]?\b"),
)
ACADEMIC_SOURCES = (".edu", "university", "college", "school", "academic", "class", "course", "student")
LEARNING_PLATFORMS = ("canvas", "blackboard", "moodle", "gradescope", "turnitin")

HIGH_PRIORITY_WORDS = ("final", "midterm", "major project", "thesis", "important", "critical")
LOW_PRIORITY_WORDS = ("discussion", "reading", "optional", "extra credit")
SUBMISSION_WORDS = {
    "online": ("online", "canvas", "blackboard", "moodle", "submit online", "upload"),
    "paper": ("paper", "hard copy", "physical", "print"),
    "in_person": ("in person", "in class"),
    "presentation": ("present", "presentation", "demo"),
    "email": ("email", "send to", "mail to"),
}
TYPE_RULES = (
    (re.compile(r"\b(final|midterm|exam)\b"), "exam"),
    (re.compile(r"\b(quiz|test)\b"), "quiz"),
    (re.compile(r"\b(lab|laboratory|experiment)\b"), "lab"),
    (re.compile(r"\b(project|research|thesis)\b"), "project"),
    (re.compile(r"\b(presentation|present|demo)\b"), "presentation"),
    (re.compile(r"\b(paper|essay|report)\b"), "paper"),
    (re.compile(r"\b(discussion|forum)\b"), "discussion"),
)
TITLE_PREFIXES = (
    re.compile(r"^(assignment|hw|homework)\s*[-:]\s*", re.IGNORECASE),
    re.compile(r"^(due|deadline)\s*[-:]\s*", re.IGNORECASE),
)

SCORE_WEIGHTS = {
    "keyword_match": 0.35,
    "title_pattern": 0.25,
    "calendar_source": 0.15,
    "context_clues": 0.15,
    "temporal_patterns": 0.05,
    "subject_detection": 0.05,
}
REASONS = {
    "keyword_match": "Contains academic keywords",
    "title_pattern": "Title follows assignment naming patterns",
    "calendar_source": "Comes from an academic calendar",
    "context_clues": "Contains assignment-related context clues",
    "subject_detection": "Contains subject code patterns",
}


@dataclass
class DetectionResult:
    detected: bool
    confidence: float
    suggested_data: dict[str, Any] = field(default_factory=dict)
    detection_reasons: list[str] = field(default_factory=list)
    requires_review: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "confidence": round(self.confidence, 4),
            "suggested_data": dict(self.suggested_data),
            "detection_reasons": list(self.detection_reasons),
            "requires_review": self.requires_review,
        }


class AssignmentDetector(Protocol):
    def detect(self, event: NormalizedCalendarEvent) -> DetectionResult:
        ...


def _text(event: NormalizedCalendarEvent) -> str:
    return f"{event.title} {event.description}".lower()


def _contains(text: str, keyword: str) -> bool:
    # Short tokens like "hw" or "lab" must match whole words.
    if len(keyword) <= 3:
        return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
    return keyword in text


def keyword_score(text: str) -> float:
    best = 0.0
    for keywords, weight, _ in KEYWORD_GROUPS.values():
        matches = sum(1 for keyword in keywords if _contains(text, keyword))
        if matches:
            best = max(best, matches / len(keywords) * weight)
    return min(best, 1.0)


def title_pattern_score(title: str) -> float:
    return min(sum(0.2 for pattern in TITLE_PATTERNS if pattern.search(title)), 1.0)


def calendar_source_score(event: NormalizedCalendarEvent) -> float:
    source = f"{event.calendar_id} {event.metadata.get('calendar_name', '')}".lower()
    return min(sum(0.3 for marker in ACADEMIC_SOURCES if marker in source), 1.0)


def context_score(description: str) -> float:
    text = description.lower()
    score = 0.0
    if any(word in text for word in ("submit", "turn in", "due")):
        score += 0.3
    score += sum(0.2 for platform in LEARNING_PLATFORMS if platform in text)
    if any(word in text for word in ("points", "grade", "%")):
        score += 0.2
    return min(score, 1.0)


def temporal_score(event: NormalizedCalendarEvent) -> float:
    if event.start is None:
        return 0.0
    score = 0.0
    if event.start.hour in (23, 0):
        score += 0.3
    if event.start.hour == 17 or event.start.minute == 59:
        score += 0.2
    if event.start.weekday() < 5:
        score += 0.1
    return min(score, 1.0)


def subject_codes(text: str) -> list[str]:
    codes: list[str] = []
    for pattern in SUBJECT_CODE_PATTERNS:
        for match in pattern.findall(text):
            code = re.sub(r"\s+", " ", match.strip().upper())
            if code not in codes:
                codes.append(code)
    return codes


def detect_assignment_type(text: str) -> str:
    for pattern, assignment_type in TYPE_RULES:
        if pattern.search(text):
            return assignment_type
    return "assignment"


def detect_priority(text: str) -> str:
    if any(word in text for word in HIGH_PRIORITY_WORDS):
        return "high"
    if any(word in text for word in LOW_PRIORITY_WORDS):
        return "low"
    return "medium"


def detect_submission_type(text: str) -> str:
    for submission_type, words in SUBMISSION_WORDS.items():
        if any(word in text for word in words):
            return submission_type
    return "online"


def clean_title(title: str) -> str:
    cleaned = title.strip()
    for pattern in TITLE_PREFIXES:
        cleaned = pattern.sub("", cleaned).strip()
    return cleaned or title.strip()


class KeywordAssignmentDetector:
    """Scores a calendar event on academic keywords, title shape and context.

    The weighted average of the individual scores is the confidence; events
    below ``MINIMUM_CONFIDENCE`` are not treated as assignments and anything
    below ``HIGH_CONFIDENCE`` is flagged for review.
    """

    def __init__(self, minimum_confidence: float = MINIMUM_CONFIDENCE) -> None:
        self.minimum_confidence = minimum_confidence

    def scores(self, event: NormalizedCalendarEvent) -> dict[str, float]:
        text = _text(event)
        return {
            "keyword_match": keyword_score(text),
            "title_pattern": title_pattern_score(event.title),
            "calendar_source": calendar_source_score(event),
            "context_clues": context_score(event.description),
            "temporal_patterns": temporal_score(event),
            "subject_detection": min(0.4 * len(subject_codes(f"{event.title} {event.description}")), 1.0),
        }

    def detect(self, event: NormalizedCalendarEvent) -> DetectionResult:
        scores = self.scores(event)
        total_weight = sum(SCORE_WEIGHTS.values())
        confidence = sum(scores[name] * weight for name, weight in SCORE_WEIGHTS.items()) / total_weight
        if confidence < self.minimum_confidence:
            return DetectionResult(
                detected=False,
                confidence=confidence,
                detection_reasons=["Confidence too low, likely not an academic assignment"],
            )

        text = _text(event)
        reasons = [reason for name, reason in REASONS.items() if scores[name] > 0.5]
        suggested: dict[str, Any] = {
            "title": clean_title(event.title),
            "description": event.description,
            "due_date": event.start,
            "assignment_type": detect_assignment_type(text),
            "priority": detect_priority(text),
            "submission_type": detect_submission_type(text),
            "tags": subject_codes(f"{event.title} {event.description}")[:4],
        }
        return DetectionResult(
            detected=True,
            confidence=confidence,
            suggested_data=suggested,
            detection_reasons=reasons or ["General academic event patterns detected"],
            requires_review=confidence < HIGH_CONFIDENCE,
        )

    def detect_many(self, events: Iterable[NormalizedCalendarEvent]) -> list[DetectionResult]:
        return [self.detect(event) for event in events]


def detection_statistics(results: list[DetectionResult]) -> dict[str, Any]:
    total = len(results)
    detected = sum(1 for result in results if result.detected)
    return {
        "total_events": total,
        "assignments_detected": detected,
        "detection_rate": detected / total if total else 0.0,
        "high_confidence_count": sum(1 for result in results if result.confidence >= HIGH_CONFIDENCE),
        "needs_review_count": sum(1 for result in results if result.requires_review),
        "average_confidence": sum(result.confidence for result in results) / total if total else 0.0,
    }
