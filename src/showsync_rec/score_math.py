"""
Numeric helpers shared by the preference, compatibility and recommendation engines.

All functions are pure. Score maps are label -> float dicts treated as sparse
vectors (a missing label counts as 0).
"""
import math
from datetime import datetime
from typing import Mapping, Sequence

import numpy as np
from scipy.stats import entropy

from .config import (
    CONFIDENCE_COUNT_WEIGHT,
    CONFIDENCE_SPAN_WEIGHT,
    CONFIDENCE_DIVERSITY_WEIGHT,
    CONFIDENCE_COUNT_SCALE,
    CONFIDENCE_SPAN_SCALE_DAYS,
)


def _clean(value: float) -> float:
    """Clamp negatives and NaN to 0."""
    if value is None or math.isnan(value) or value < 0:
        return 0.0
    return float(value)


def normalize_scores(scores: Mapping[str, float]) -> dict[str, float]:
    """
    Rescale scores so the largest maps to 1.0, preserving ratios and order.

    Negative and NaN inputs are clamped to 0 first; an all-zero map stays all
    zero. Empty input gives empty output.
    """
    if not scores:
        return {}

    cleaned = {label: _clean(value) for label, value in scores.items()}
    max_val = max(cleaned.values())
    if max_val <= 0:
        return {label: 0.0 for label in cleaned}
    return {label: value / max_val for label, value in cleaned.items()}


def _aligned_vectors(a: Mapping[str, float], b: Mapping[str, float]) -> tuple[np.ndarray, np.ndarray]:
    keys = sorted(set(a) | set(b))
    vec_a = np.array([a.get(k, 0.0) for k in keys], dtype=float)
    vec_b = np.array([b.get(k, 0.0) for k in keys], dtype=float)
    return vec_a, vec_b


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine similarity over the union of keys; 0 if either vector is zero."""
    if not a or not b:
        return 0.0

    vec_a, vec_b = _aligned_vectors(a, b)
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    sim = float(np.dot(vec_a, vec_b) / (norm_a * norm_b))
    return min(1.0, max(0.0, sim))


def weighted_average(values: Sequence[float], weights: Sequence[float]) -> float:
    """Σ(value·weight)/Σ(weight), or 0.0 when the weights sum to zero."""
    if len(values) != len(weights):
        raise ValueError(f"values and weights differ in length ({len(values)} vs {len(weights)})")
    if not values:
        return 0.0

    w = np.asarray(weights, dtype=float)
    total = w.sum()
    if total == 0:
        return 0.0
    return float(np.dot(np.asarray(values, dtype=float), w) / total)


def standard_deviation(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than two samples."""
    if len(values) < 2:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float)))


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from earlier to later (negative if reversed)."""
    return (later - earlier).total_seconds() / 86400.0


def apply_time_decay(
    base_score: float,
    event_time: datetime | None,
    decay_factor: float,
    now: datetime | None = None,
) -> float:
    """
    Down-weight an older signal: base * exp(-decay_factor * days_since).

    Events with no timestamp or in the future are not decayed.
    """
    if event_time is None:
        return base_score
    if now is None:
        now = datetime.now()

    age_days = days_between(event_time, now)
    if age_days <= 0:
        return base_score
    return base_score * math.exp(-decay_factor * age_days)


def calculate_confidence_score(interaction_count: int, time_span_days: float, diversity_score: float) -> float:
    """
    Reliability of a profile in [0, 1].

    Blends a saturating volume term, a saturating history-span term and the
    diversity score. Non-decreasing in both count and span; 0 with no data.
    """
    if interaction_count <= 0:
        return 0.0

    volume = 1.0 - math.exp(-interaction_count / CONFIDENCE_COUNT_SCALE)
    span = 1.0 - math.exp(-max(0.0, time_span_days) / CONFIDENCE_SPAN_SCALE_DAYS)
    diversity = min(1.0, _clean(diversity_score))

    score = (
        CONFIDENCE_COUNT_WEIGHT * volume
        + CONFIDENCE_SPAN_WEIGHT * span
        + CONFIDENCE_DIVERSITY_WEIGHT * diversity
    )
    return float(np.clip(score, 0.0, 1.0))


def calculate_diversity(category_scores: Mapping[str, float]) -> float:
    """
    Normalized Shannon entropy of a category distribution.

    0 means a single-category focus, 1 means evenly spread across categories.
    """
    positive = [v for v in (_clean(s) for s in category_scores.values()) if v > 0]
    if len(positive) <= 1:
        return 0.0

    h = entropy(positive)  # scipy normalizes the distribution
    return float(np.clip(h / math.log(len(positive)), 0.0, 1.0))
