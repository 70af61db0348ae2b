"""Power stream metrics: Normalized Power and the mean-maximal power curve.

Both expect a nominal 1 Hz sample stream. Missing samples should already be
dropped by the caller.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

NP_WINDOW_SAMPLES = 30
MMP_DURATIONS_SECONDS: tuple[int, ...] = (1, 5, 10, 30, 60, 120, 300, 600, 1200, 1800, 3600)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalized_power(samples: Sequence[float]) -> int | None:
    """Compute Normalized Power.

    30-sample rolling average at every full-window position, each raised to
    the 4th power, averaged, then the 4th root, rounded to the nearest watt.

    Args:
        samples: Power samples in watts

    Returns:
        Normalized Power in watts, or None with fewer than 30 samples
    """
    if len(samples) < NP_WINDOW_SAMPLES:
        return None

    window_sum = float(sum(samples[:NP_WINDOW_SAMPLES]))
    fourth_powers = (window_sum / NP_WINDOW_SAMPLES) ** 4
    positions = 1
    for i in range(NP_WINDOW_SAMPLES, len(samples)):
        window_sum += samples[i] - samples[i - NP_WINDOW_SAMPLES]
        fourth_powers += (window_sum / NP_WINDOW_SAMPLES) ** 4
        positions += 1

    return round_half_up((fourth_powers / positions) ** 0.25)


def best_average(samples: Sequence[float], duration: int) -> float | None:
    """Highest average over any window of `duration` consecutive samples.

    O(n) running sum. Returns None when the stream is shorter than the window.
    """
    if duration <= 0 or len(samples) < duration:
        return None

    window_sum = float(sum(samples[:duration]))
    best = window_sum
    for i in range(duration, len(samples)):
        window_sum += samples[i] - samples[i - duration]
        if window_sum > best:
            best = window_sum
    return best / duration


def mean_maximal_power(
    samples: Sequence[float],
    durations: Sequence[int] = MMP_DURATIONS_SECONDS,
) -> dict[str, int]:
    """Mean-maximal power curve keyed by "<seconds>s".

    Durations longer than the stream, or whose best average rounds to zero or
    less, are omitted.
    """
    curve: dict[str, int] = {}
    for duration in durations:
        average = best_average(samples, duration)
        if average is None:
            continue
        watts = round_half_up(average)
        if watts > 0:
            curve[f"{duration}s"] = watts
    return curve


def intensity_factor(np_watts: float | None, threshold_watts: float | None) -> float | None:
    if not np_watts or not threshold_watts:
        return None
    return round(np_watts / threshold_watts, 3)


def training_stress_score(
    np_watts: float | None,
    threshold_watts: float | None,
    duration_seconds: float | None,
) -> float | None:
    """TSS = (seconds * NP * IF) / (FTP * 3600) * 100."""
    factor = intensity_factor(np_watts, threshold_watts)
    if factor is None or not duration_seconds:
        return None
    return round((duration_seconds * np_watts * factor) / (threshold_watts * 3600) * 100, 1)
