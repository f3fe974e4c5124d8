"""Trust score rules.

Scores live in [0, 100]. Every change is computed here and then *set* on the
user row; callers never issue a blind increment, so a score can neither
overflow nor underflow under concurrent updates.
"""

from __future__ import annotations

import enum

TRUST_SCORE_MIN = 0
TRUST_SCORE_MAX = 100


class TrustEvent(enum.StrEnum):
    COMPLETED_SWAP = "completed_swap"
    CANCELLED_BY_USER = "cancelled_by_user"
    MUTUAL_CANCEL = "mutual_cancel"
    DISPUTE_LOST = "dispute_lost"
    UNFAIR_FEEDBACK = "unfair_feedback"


DEFAULT_TRUST_POINTS: dict[TrustEvent, int] = {
    TrustEvent.COMPLETED_SWAP: 2,
    TrustEvent.CANCELLED_BY_USER: -3,
    TrustEvent.MUTUAL_CANCEL: 0,
    TrustEvent.DISPUTE_LOST: -10,
    TrustEvent.UNFAIR_FEEDBACK: -2,
}


def clamp_trust(score: int) -> int:
    return max(TRUST_SCORE_MIN, min(TRUST_SCORE_MAX, score))


def apply_trust_delta(current: int, delta: int) -> int:
    """Return the clamped score after applying ``delta``."""
    return clamp_trust(current + delta)


def trust_points_from_settings(settings) -> dict[TrustEvent, int]:  # noqa: ANN001
    return {
        TrustEvent.COMPLETED_SWAP: settings.trust_completed_swap,
        TrustEvent.CANCELLED_BY_USER: settings.trust_cancelled_by_user,
        TrustEvent.MUTUAL_CANCEL: 0,
        TrustEvent.DISPUTE_LOST: settings.trust_dispute_lost,
        TrustEvent.UNFAIR_FEEDBACK: settings.trust_unfair_feedback,
    }
