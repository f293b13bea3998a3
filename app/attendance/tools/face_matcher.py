import math
from collections.abc import Mapping, Sequence
from typing import Any, Optional

import numpy as np

DEFAULT_FACE_MATCH_THRESHOLD = 0.45

# Distance reported when two embeddings cannot be compared. Never a match.
INCOMPARABLE_DISTANCE = math.inf


def _key_order(key: Any):
    # Index-like keys ("0", "1", ..., "10") sort numerically, as they came from an array.
    try:
        return (0, int(key), "")
    except (TypeError, ValueError):
        return (1, 0, str(key))


def to_embedding(value: Any) -> Optional[np.ndarray]:
    """
    Canonicalizes a face descriptor into a 1-D float vector.

    Clients send descriptors either as a list or, after a lossy JSON round trip,
    as a map of index to value ({"0": 0.12, "1": -0.03, ...}). Both encodings
    become the same ordered vector here. Returns None for a missing or empty
    descriptor; raises ValueError if the values are not numeric.
    """
    if value is None:
        return None
    if isinstance(value, np.ndarray):
        values = value.ravel().tolist()
    elif isinstance(value, Mapping):
        values = [value[key] for key in sorted(value.keys(), key=_key_order)]
    elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        values = list(value)
    else:
        raise ValueError("Face descriptor must be a list or an index-keyed map of numbers.")

    if not values:
        return None
    try:
        return np.asarray([float(v) for v in values], dtype=float)
    except (TypeError, ValueError) as exc:
        raise ValueError("Face descriptor must contain only numeric values.") from exc


def embedding_distance(a: Any, b: Any) -> float:
    """
    Euclidean distance between two embeddings in any accepted encoding.
    Missing, empty, malformed or different-length inputs give INCOMPARABLE_DISTANCE.
    """
    try:
        vec_a = to_embedding(a)
        vec_b = to_embedding(b)
    except ValueError:
        return INCOMPARABLE_DISTANCE
    if vec_a is None or vec_b is None or vec_a.shape != vec_b.shape:
        return INCOMPARABLE_DISTANCE
    return float(np.linalg.norm(vec_a - vec_b))


def is_face_match(distance: float, threshold: float = DEFAULT_FACE_MATCH_THRESHOLD) -> bool:
    return math.isfinite(distance) and distance < threshold
