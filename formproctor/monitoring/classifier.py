"""
Frame Classifier - person and object detection behind one interface

Two interchangeable backends built on mediapipe Tasks:
- DualModelClassifier: BlazeFace face detector for presence + EfficientDet
  object detector for prohibited items
- SingleDetectorClassifier: EfficientDet alone, counting "person" labels

Both normalize their output to a FrameAnalysis so the interpretation rules
never see backend-specific shapes.
"""

import os
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

import cv2
import httpx
import numpy as np

from ..models.schemas import Detection, FrameAnalysis
from .errors import ModelLoadError

logger = logging.getLogger(__name__)

PERSON_LABEL = "person"


def _top_category(detection):
    categories = getattr(detection, "categories", None) or []
    return categories[0] if categories else None


def normalize_faces(face_detections: Iterable) -> List[float]:
    """Confidence of each detected face."""
    scores = []
    for detection in face_detections:
        category = _top_category(detection)
        scores.append(float(category.score) if category is not None else 0.0)
    return scores


def normalize_objects(object_detections: Iterable) -> List[Detection]:
    """Flatten mediapipe object detections to (label, confidence) pairs."""
    detections = []
    for detection in object_detections:
        category = _top_category(detection)
        if category is None or not category.category_name:
            continue
        detections.append(Detection(
            class_label=category.category_name.lower(),
            confidence=float(category.score),
        ))
    return detections


def split_people(detections: List[Detection]) -> FrameAnalysis:
    """Build a FrameAnalysis from a general detector's output."""
    people = [d.confidence for d in detections if d.class_label == PERSON_LABEL]
    objects = [d for d in detections if d.class_label != PERSON_LABEL]
    return FrameAnalysis(
        person_count=len(people),
        person_confidences=people,
        objects=objects,
    )


def load_base_options(location: str, timeout: float = 30.0):
    """
    Resolve a model asset location to mediapipe BaseOptions.

    URLs are downloaded and passed as an in-memory buffer; anything else
    must be a readable local file.
    """
    if location.startswith(("http://", "https://")):
        try:
            response = httpx.get(location, timeout=timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ModelLoadError(f"Failed to download model asset {location}: {e}") from e
        logger.info(f"Downloaded model asset {location} ({len(response.content)} bytes)")

        from mediapipe.tasks import python as mp_tasks
        return mp_tasks.BaseOptions(model_asset_buffer=response.content)

    if not os.path.exists(location):
        raise ModelLoadError(f"Model asset not found: {location}")

    from mediapipe.tasks import python as mp_tasks
    return mp_tasks.BaseOptions(model_asset_path=location)


def to_mp_image(frame: np.ndarray):
    """Wrap a BGR OpenCV frame as an SRGB mediapipe image."""
    import mediapipe as mp

    rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    return mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)


class FrameClassifier(ABC):
    """Capability: given a frame, report people and objects in it."""

    name = "base"

    @abstractmethod
    def load(self):
        """Load model handles. Blocking; raises ModelLoadError."""

    @abstractmethod
    def classify(self, frame: np.ndarray) -> FrameAnalysis:
        """Run detection on one BGR frame."""

    @abstractmethod
    def close(self):
        """Release model handles. Safe to call repeatedly."""


class DualModelClassifier(FrameClassifier):
    """Face detector for presence, object detector for prohibited items."""

    name = "dual"

    def __init__(
        self,
        face_model: str,
        object_model: str,
        face_confidence: float = 0.5,
        object_confidence: float = 0.5,
        max_results: int = 10,
        download_timeout: float = 30.0,
    ):
        self.face_model = face_model
        self.object_model = object_model
        self.face_confidence = face_confidence
        self.object_confidence = object_confidence
        self.max_results = max_results
        self.download_timeout = download_timeout
        self.face_detector = None
        self.object_detector = None

    def load(self):
        if self.face_detector is not None and self.object_detector is not None:
            return

        try:
            from mediapipe.tasks.python import vision

            face_options = vision.FaceDetectorOptions(
                base_options=load_base_options(self.face_model, self.download_timeout),
                running_mode=vision.RunningMode.IMAGE,
                min_detection_confidence=self.face_confidence,
            )
            object_options = vision.ObjectDetectorOptions(
                base_options=load_base_options(self.object_model, self.download_timeout),
                running_mode=vision.RunningMode.IMAGE,
                max_results=self.max_results,
                score_threshold=self.object_confidence,
            )
            self.face_detector = vision.FaceDetector.create_from_options(face_options)
            self.object_detector = vision.ObjectDetector.create_from_options(object_options)
        except ModelLoadError:
            self.close()
            raise
        except Exception as e:
            self.close()
            raise ModelLoadError(f"Failed to initialize detection models: {e}") from e

        logger.info("Face and object detectors loaded")

    def classify(self, frame: np.ndarray) -> FrameAnalysis:
        if self.face_detector is None or self.object_detector is None:
            raise RuntimeError("Classifier is not loaded")

        image = to_mp_image(frame)
        faces = normalize_faces(self.face_detector.detect(image).detections)
        objects = normalize_objects(self.object_detector.detect(image).detections)
        return FrameAnalysis(
            person_count=len(faces),
            person_confidences=faces,
            objects=objects,
        )

    def close(self):
        for attr in ("face_detector", "object_detector"):
            detector = getattr(self, attr)
            setattr(self, attr, None)
            if detector is not None:
                try:
                    detector.close()
                except Exception as e:
                    logger.warning(f"Error closing {attr}: {e}")


class SingleDetectorClassifier(FrameClassifier):
    """One general object detector; people are counted from its labels."""

    name = "single"

    def __init__(
        self,
        object_model: str,
        object_confidence: float = 0.5,
        max_results: int = 10,
        download_timeout: float = 30.0,
    ):
        self.object_model = object_model
        self.object_confidence = object_confidence
        self.max_results = max_results
        self.download_timeout = download_timeout
        self.detector = None

    def load(self):
        if self.detector is not None:
            return

        try:
            from mediapipe.tasks.python import vision

            options = vision.ObjectDetectorOptions(
                base_options=load_base_options(self.object_model, self.download_timeout),
                running_mode=vision.RunningMode.IMAGE,
                max_results=self.max_results,
                score_threshold=self.object_confidence,
            )
            self.detector = vision.ObjectDetector.create_from_options(options)
        except ModelLoadError:
            raise
        except Exception as e:
            raise ModelLoadError(f"Failed to initialize object detector: {e}") from e

        logger.info("General object detector loaded")

    def classify(self, frame: np.ndarray) -> FrameAnalysis:
        if self.detector is None:
            raise RuntimeError("Classifier is not loaded")

        result = self.detector.detect(to_mp_image(frame))
        return split_people(normalize_objects(result.detections))

    def close(self):
        detector = self.detector
        self.detector = None
        if detector is not None:
            try:
                detector.close()
            except Exception as e:
                logger.warning(f"Error closing object detector: {e}")


def create_classifier(backend: Optional[str] = None, config=None) -> FrameClassifier:
    """Build the classifier strategy named by backend (defaults to settings)."""
    if config is None:
        from ..config import settings as config

    backend = (backend or config.CLASSIFIER_BACKEND).lower()

    if backend == "dual":
        return DualModelClassifier(
            face_model=config.FACE_MODEL_PATH,
            object_model=config.OBJECT_MODEL_PATH,
            face_confidence=config.FACE_CONFIDENCE_THRESHOLD,
            object_confidence=config.OBJECT_CONFIDENCE_THRESHOLD,
            max_results=config.OBJECT_MAX_RESULTS,
            download_timeout=config.MODEL_DOWNLOAD_TIMEOUT,
        )
    if backend == "single":
        return SingleDetectorClassifier(
            object_model=config.OBJECT_MODEL_PATH,
            object_confidence=config.OBJECT_CONFIDENCE_THRESHOLD,
            max_results=config.OBJECT_MAX_RESULTS,
            download_timeout=config.MODEL_DOWNLOAD_TIMEOUT,
        )
    raise ValueError(f"Unknown classifier backend: {backend}")
