"""
Pytest Configuration for Proctoring Monitor Tests
"""
import os
import sys
import threading
from typing import List, Optional

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from formproctor.config import Settings
from formproctor.models.schemas import FrameAnalysis
from formproctor.monitoring.classifier import FrameClassifier


class FakeCapture:
    """Stands in for cv2.VideoCapture."""

    def __init__(self, opened: bool = True, frames: Optional[int] = None):
        self.opened = opened
        self.frames_left = frames
        self.released = False
        self.properties = {}

    def isOpened(self):
        return self.opened and not self.released

    def set(self, prop, value):
        self.properties[prop] = value
        return True

    def read(self):
        if self.released:
            return False, None
        if self.frames_left is not None:
            if self.frames_left <= 0:
                return False, None
            self.frames_left -= 1
        return True, np.zeros((240, 320, 3), dtype=np.uint8)

    def release(self):
        self.released = True


class CaptureFactory:
    """Records every capture it opens so tests can check they were released."""

    def __init__(self, opened: bool = True, frames: Optional[int] = None, gate: Optional[threading.Event] = None):
        self.opened = opened
        self.frames = frames
        self.gate = gate
        self.captures: List[FakeCapture] = []

    def __call__(self, index):
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        capture = FakeCapture(opened=self.opened, frames=self.frames)
        self.captures.append(capture)
        return capture


class FakeClassifier(FrameClassifier):
    """Returns scripted analyses instead of running models."""

    name = "fake"

    def __init__(
        self,
        analysis: Optional[FrameAnalysis] = None,
        load_error: Optional[Exception] = None,
        classify_error: Optional[Exception] = None,
        load_gate: Optional[threading.Event] = None,
        classify_gate: Optional[threading.Event] = None,
    ):
        self.analysis = analysis or FrameAnalysis(person_count=1, person_confidences=[0.9])
        self.load_error = load_error
        self.classify_error = classify_error
        self.load_gate = load_gate
        self.classify_gate = classify_gate
        self.loaded = False
        self.close_calls = 0
        self.classify_calls = 0

    def load(self):
        if self.load_gate is not None:
            self.load_gate.wait(timeout=5.0)
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True

    def classify(self, frame):
        self.classify_calls += 1
        if self.classify_gate is not None:
            self.classify_gate.wait(timeout=5.0)
        if self.classify_error is not None:
            raise self.classify_error
        return self.analysis

    def close(self):
        self.close_calls += 1
        self.loaded = False


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    """Settings with remote reporting switched off"""
    return Settings(INGESTION_URL="", DETECTION_INTERVAL_MS=2000)


@pytest.fixture
def capture_factory():
    return CaptureFactory()


@pytest.fixture
def fake_classifier():
    return FakeClassifier()
