"""
Confidence scoring utilities.
Helpers to clamp, combine and label the confidence attached to anomaly findings.
"""

from typing import List, Tuple
from statistics import mean


def clamp_confidence(confidence: float) -> float:
    """Clamp a confidence score to [0, 1]."""
    return max(0.0, min(1.0, confidence))


def combine_confidence_scores(
    scores: List[float],
    weights: List[float] = None,
    method: str = "weighted_mean"
) -> float:
    """
    Combine multiple confidence scores.

    Args:
        scores: List of confidence scores (0-1)
        weights: Optional weights for weighted mean
        method: "mean", "min", "max", or "weighted_mean"

    Returns:
        Combined confidence score (0-1)
    """
    if not scores:
        return 0.0

    scores = [clamp_confidence(score) for score in scores]

    if method == "mean":
        return mean(scores)
    elif method == "min":
        return min(scores)
    elif method == "max":
        return max(scores)
    elif method == "weighted_mean":
        if weights is None:
            weights = [1.0] * len(scores)
        if len(weights) != len(scores):
            raise ValueError(f"Weights length ({len(weights)}) must match scores length ({len(scores)})")
        weights = [w / sum(weights) for w in weights]
        return sum(s * w for s, w in zip(scores, weights))
    else:
        raise ValueError(f"Unknown confidence combination method: {method}")


def confidence_level_name(confidence: float) -> str:
    """Convert confidence score to readable level name."""
    if confidence >= 0.9:
        return "HIGH"
    elif confidence >= 0.8:
        return "MEDIUM"
    else:
        return "LOW"


def interpret_confidence(confidence: float) -> Tuple[str, str]:
    """
    Get human-readable interpretation of an anomaly confidence score.

    Returns:
        (level_name, description)
    """
    levels = {
        "HIGH": "Strong signal, investigate before further payments",
        "MEDIUM": "Likely issue, review within the current cycle",
        "LOW": "Weak signal, informational",
    }

    level = confidence_level_name(confidence)
    return level, levels[level]
