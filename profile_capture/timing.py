from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from profile_capture.capture_config import MAX_PAUSE_MS, PauseSettings

NO_PAUSES = PauseSettings(enabled=False)

# (min_ms, max_ms) spans for pauses that should not follow the configured range
SCROLL_STEP_SPAN = (80, 260)
SCROLL_SETTLE_SPAN = (100, 300)


@dataclass(frozen=True)
class PollResult:
    detected: bool
    attempts: int


def human_pause(
    page: Any,
    settings: PauseSettings,
    span: tuple[int, int] | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """Wait a random number of milliseconds and return it (0 when pauses are off)."""
    if not settings.enabled:
        return 0

    lower, upper = span if span is not None else (settings.min_ms, settings.max_ms)
    lower = max(0, min(lower, MAX_PAUSE_MS))
    upper = max(lower, min(upper, MAX_PAUSE_MS))

    wait_ms = (rng or random).randint(lower, upper)
    if wait_ms > 0:
        page.wait_for_timeout(wait_ms)
    return wait_ms


def poll_until(
    page: Any,
    probe: Callable[[], bool],
    *,
    interval_ms: int,
    max_attempts: int,
) -> PollResult:
    """Check ``probe`` up to ``max_attempts`` times, waiting ``interval_ms`` between misses.

    A probe that raises counts as a miss; the total wait is bounded by
    ``interval_ms * max_attempts``.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            if probe():
                return PollResult(detected=True, attempts=attempt)
        except Exception:
            pass
        page.wait_for_timeout(interval_ms)
    return PollResult(detected=False, attempts=max_attempts)


def settle(page: Any, delay_ms: int) -> None:
    if delay_ms > 0:
        page.wait_for_timeout(delay_ms)
