"""Canary error-rate analysis.

A pure function: the same inputs always produce the same verdict.
"""

from __future__ import annotations

from rollgate.core.models import CanaryDecision, CanaryVerdict


def analyze(
    error_count: int,
    total_count: int,
    threshold: float,
    minimum_sample_size: int,
    traffic_percent: int | None = None,
) -> CanaryVerdict:
    """Decide whether a canary step may advance.

    Rules, first match wins:
    - fewer than ``minimum_sample_size`` requests: hold (not enough evidence)
    - error rate above ``threshold``: abort
    - otherwise: promote

    Args:
        error_count: Failed requests in the window
        total_count: All requests in the window
        threshold: Maximum tolerated error rate as a fraction in (0, 1]
        minimum_sample_size: Requests required before a decision is made
        traffic_percent: Candidate weight the samples were taken at

    Returns:
        CanaryVerdict with the error rate expressed in percent
    """
    if error_count < 0 or total_count < 0:
        raise ValueError("sample counts must be non-negative")

    rate = error_count / max(total_count, 1)
    rate_percent = round(rate * 100, 4)

    if total_count < minimum_sample_size:
        decision = CanaryDecision.HOLD
        reason = f"insufficient samples: {total_count} < {minimum_sample_size}"
    elif rate > threshold:
        decision = CanaryDecision.ABORT
        reason = f"error rate {rate_percent}% exceeds {threshold * 100:g}%"
    else:
        decision = CanaryDecision.PROMOTE
        reason = f"error rate {rate_percent}% within {threshold * 100:g}%"

    return CanaryVerdict(
        error_rate_percent=rate_percent,
        sample_size=total_count,
        error_count=error_count,
        decision=decision,
        reason=reason,
        traffic_percent=traffic_percent,
    )
