"""Credit scoring for BNPL admission.

The score lives on the subscription and only the payment engine moves it:
+10 per direct payment, never decreased. BNPL needs a score strictly above
the threshold, so a score of exactly 50 is turned away.
"""
from typing import Optional

from sorosub.config import settings

CREDIT_SCORE_MAX = 2**32 - 1


def next_score(score: int, increment: Optional[int] = None) -> int:
    """Score after one successful direct payment, saturating at the u32 ceiling."""
    step = settings.credit_score_increment if increment is None else increment
    return min(score + step, CREDIT_SCORE_MAX)


def is_bnpl_eligible(score: int, threshold: Optional[int] = None) -> bool:
    minimum = settings.bnpl_min_credit_score if threshold is None else threshold
    return score > minimum
