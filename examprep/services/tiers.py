from dataclasses import dataclass
from typing import Dict, Optional

@dataclass(frozen=True)
class TierLimits:
    max_questions_per_exam: int
    monthly_generations: Optional[int]  # None = unlimited
    daily_generations: int
    max_active_exams: int
    max_downloads: int
    can_download: bool

TIER_LIMITS: Dict[str, TierLimits] = {
    "basic": TierLimits(max_questions_per_exam=20, monthly_generations=10, daily_generations=1,
                        max_active_exams=1, max_downloads=0, can_download=False),
    "standard": TierLimits(max_questions_per_exam=50, monthly_generations=50, daily_generations=100,
                           max_active_exams=3, max_downloads=1, can_download=True),
    "premium": TierLimits(max_questions_per_exam=100, monthly_generations=None, daily_generations=1000,
                          max_active_exams=10, max_downloads=5, can_download=True),
}

DEFAULT_TIER = "basic"

def limits_for(tier: Optional[str]) -> TierLimits:
    return TIER_LIMITS.get((tier or DEFAULT_TIER).lower(), TIER_LIMITS[DEFAULT_TIER])
