from __future__ import annotations

import math
from collections.abc import Sequence

from .types import Prediction, Scores


def softmax(scores: Scores) -> tuple[float, ...]:
    """Numerically stable softmax: shift by the max before exponentiating."""
    if not scores:
        raise ValueError("scores must not be empty")
    vals = [float(s) for s in scores]
    if not all(math.isfinite(v) for v in vals):
        raise ValueError("scores must be finite")
    m = max(vals)
    exps = [math.exp(v - m) for v in vals]
    total = sum(exps)
    return tuple(e / total for e in exps)


def rank_scores(scores: Scores, labels: Sequence[str]) -> Prediction:
    """Pick the most probable class; ties go to the lowest index."""
    if len(scores) != len(labels):
        raise ValueError("score count does not match label count")
    probs = softmax(scores)
    top_idx = 0
    best = probs[0]
    for i in range(1, len(probs)):
        if probs[i] > best:
            best = probs[i]
            top_idx = i
    return Prediction(label=labels[top_idx], index=top_idx, confidence=best, probs=probs)
