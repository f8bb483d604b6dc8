"""
Interpretation rules: turn one frame's detections into violation candidates.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..models.schemas import FrameAnalysis, ViolationKind

# COCO labels shared by the mediapipe object detector
PROHIBITED_OBJECTS: Dict[str, Tuple[ViolationKind, str]] = {
    "cell phone": (ViolationKind.PHONE_DETECTED, "Cell Phone"),
    "book": (ViolationKind.BOOK_DETECTED, "Book"),
    "laptop": (ViolationKind.LAPTOP_DETECTED, "Laptop"),
    "remote": (ViolationKind.PROHIBITED_OBJECT, "Remote/Device"),
    "tablet": (ViolationKind.PROHIBITED_OBJECT, "Tablet"),
}

NO_PERSON_MESSAGE = "⚠ No person detected — please stay in front of the camera"
MULTIPLE_PEOPLE_MESSAGE = "⚠ {count} people detected — only the test-taker should be visible"
PROHIBITED_OBJECT_MESSAGE = "⚠ {label} detected — prohibited items are not allowed"
TAB_SWITCH_MESSAGE = "⚠ Tab switch detected — do not leave this page during the assessment"


@dataclass(frozen=True)
class ViolationCandidate:
    kind: ViolationKind
    message: str
    confidence: Optional[float] = None


def extra_person_confidence(confidences: List[float]) -> float:
    """Highest confidence among everyone but the primary (most confident) person."""
    ranked = sorted(confidences, reverse=True)
    return ranked[1] if len(ranked) > 1 else 0.0


def interpret(analysis: FrameAnalysis, threshold: float = 0.5) -> List[ViolationCandidate]:
    """
    Apply presence and prohibited-object rules, in order.

    Objects must score strictly above threshold to count.
    """
    candidates: List[ViolationCandidate] = []

    if analysis.person_count == 0:
        candidates.append(ViolationCandidate(ViolationKind.NO_PERSON, NO_PERSON_MESSAGE))
    elif analysis.person_count > 1:
        candidates.append(ViolationCandidate(
            ViolationKind.MULTIPLE_PEOPLE,
            MULTIPLE_PEOPLE_MESSAGE.format(count=analysis.person_count),
            extra_person_confidence(analysis.person_confidences),
        ))

    for detection in analysis.objects:
        prohibited = PROHIBITED_OBJECTS.get(detection.class_label.lower())
        if prohibited is None or detection.confidence <= threshold:
            continue
        kind, label = prohibited
        candidates.append(ViolationCandidate(
            kind,
            PROHIBITED_OBJECT_MESSAGE.format(label=label),
            detection.confidence,
        ))

    return candidates
