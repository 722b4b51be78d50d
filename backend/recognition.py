"""
Face matching and the InsightFace detector adapter.

Matching is Euclidean nearest-neighbour against the registered reference
embeddings with a strict distance threshold. The detector is an external
capability: anything with a ``detect_faces(image)`` method returning
``Detection`` objects can drive the attendance sessions.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from errors import InvalidInput

logger = logging.getLogger(__name__)

# Maximum Euclidean distance (exclusive) for a probe to count as the same face.
# Lowering it reduces false accepts at the cost of more false rejects.
MATCH_THRESHOLD = 0.6


@dataclass
class Detection:
    """One detected face: bounding box [x, y, w, h] and its embedding."""
    bbox: List[int]
    embedding: np.ndarray
    det_score: float = 1.0


@dataclass(frozen=True)
class MatchResult:
    identity_id: Optional[str]
    distance: float

    @property
    def matched(self) -> bool:
        return self.identity_id is not None


def as_vector(values, label: str = "embedding") -> np.ndarray:
    """Validate and convert a numeric sequence to a 1-D float64 array."""
    try:
        raw = np.asarray(values)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"{label} must be a flat list of numbers") from e

    if raw.dtype.kind not in "iuf":
        raise InvalidInput(f"{label} must contain only numbers")
    if raw.ndim != 1:
        raise InvalidInput(f"{label} must be one-dimensional, got shape {raw.shape}")
    if raw.size == 0:
        raise InvalidInput(f"{label} must not be empty")

    vector = raw.astype(np.float64)
    if not np.all(np.isfinite(vector)):
        raise InvalidInput(f"{label} contains NaN or infinite values")
    return vector


def euclidean_distance(a, b) -> float:
    """Euclidean distance between two equal-length vectors."""
    a = as_vector(a, "probe")
    b = as_vector(b, "reference")
    if a.shape != b.shape:
        raise InvalidInput(f"Vector length mismatch: {a.shape[0]} != {b.shape[0]}")
    return float(np.sqrt(np.sum((a - b) ** 2)))


def match(probe, candidates: Sequence[Tuple[str, Sequence[float]]],
          threshold: float = MATCH_THRESHOLD) -> MatchResult:
    """
    Find the registered identity closest to ``probe``.

    Args:
        probe: Embedding of the face being identified
        candidates: (identity id, reference embedding) pairs
        threshold: Distances strictly below this are a match

    Returns:
        MatchResult with the closest id, or None and the minimum distance
        found (infinity when there are no candidates). The first candidate
        reaching the minimum wins ties.
    """
    probe = as_vector(probe, "probe")

    best_id = None
    best_distance = math.inf
    for identity_id, reference in candidates:
        distance = euclidean_distance(probe, reference)
        if distance < best_distance:
            best_distance = distance
            best_id = identity_id

    if best_id is not None and best_distance < threshold:
        return MatchResult(identity_id=best_id, distance=best_distance)
    return MatchResult(identity_id=None, distance=best_distance)


class FaceRecognizer:
    """
    Wrapper around InsightFace for face detection and embedding.
    Uses buffalo_l model by default with GPU support and CPU fallback.
    """

    def __init__(self, model_name: str = "buffalo_l", det_size: tuple = (640, 640), use_gpu: bool = True):
        """
        Initialize the face recognizer.

        Args:
            model_name: InsightFace model name (buffalo_l, buffalo_sc, etc.)
            det_size: Detection size for face detector
            use_gpu: Try to use GPU, fallback to CPU if unavailable
        """
        from insightface.app import FaceAnalysis

        logger.info("Loading InsightFace model: %s", model_name)
        providers = self._select_providers(use_gpu)

        self.app = FaceAnalysis(name=model_name, providers=providers)
        self.app.prepare(ctx_id=0, det_size=det_size)

        self.model_name = model_name
        self.providers = providers
        logger.info("Model %s loaded with providers: %s", model_name, providers)

    @staticmethod
    def _select_providers(use_gpu: bool) -> List[str]:
        if not use_gpu:
            return ['CPUExecutionProvider']

        import onnxruntime as ort
        available = ort.get_available_providers()
        if 'CUDAExecutionProvider' in available:
            return ['CUDAExecutionProvider', 'CPUExecutionProvider']
        if 'CoreMLExecutionProvider' in available:
            return ['CoreMLExecutionProvider', 'CPUExecutionProvider']
        logger.warning("GPU not available, using CPU")
        return ['CPUExecutionProvider']

    def detect_faces(self, image: np.ndarray, min_face_size: int = 30) -> List[Detection]:
        """
        Detect faces in an image and extract embeddings.

        Args:
            image: BGR image from OpenCV
            min_face_size: Minimum face size to keep

        Returns:
            List of Detection, one per face large enough to use
        """
        results = []
        for face in self.app.get(image):
            x1, y1, x2, y2 = face.bbox.astype(int)
            w = x2 - x1
            h = y2 - y1
            if w < min_face_size or h < min_face_size:
                continue

            results.append(Detection(
                bbox=[int(x1), int(y1), int(w), int(h)],
                # Unit-length embedding so distances are comparable across faces
                embedding=np.asarray(face.normed_embedding, dtype=np.float64),
                det_score=float(face.det_score),
            ))

        return results

    def get_provider_info(self) -> dict:
        """Get information about active execution providers."""
        return {
            "providers": self.providers,
            "using_gpu": any(p in ['CUDAExecutionProvider', 'CoreMLExecutionProvider'] for p in self.providers)
        }
