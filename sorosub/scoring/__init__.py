"""Credit scoring for BNPL admission."""
from sorosub.scoring.credit_score import CREDIT_SCORE_MAX, is_bnpl_eligible, next_score

__all__ = ["CREDIT_SCORE_MAX", "is_bnpl_eligible", "next_score"]
