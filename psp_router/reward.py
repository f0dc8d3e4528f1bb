"""Turn a transaction outcome into a bounded learning signal."""

import math
from dataclasses import dataclass

from psp_router.models import TransactionOutcome


@dataclass(frozen=True)
class RewardSettings:
    speed_threshold_ms: int = 1000
    speed_bonus: float = 0.1
    risk_threshold: int = 50
    risk_penalty: float = 0.2
    min_amount: float = 1e-6
    lower: float = -1.0
    upper: float = 1.0


DEFAULT_REWARD_SETTINGS = RewardSettings()


def compute_reward(
    outcome: TransactionOutcome, settings: RewardSettings = DEFAULT_REWARD_SETTINGS,
) -> float:
    """Authorization minus fee ratio, with speed bonus and risk penalty.

    The result is clamped to ``[settings.lower, settings.upper]``; a zero
    transaction amount is floored to ``settings.min_amount``.
    """
    amount = max(float(outcome.transaction_amount), settings.min_amount)
    reward = 1.0 if outcome.authorized else 0.0
    reward -= float(outcome.fee_amount) / amount
    if outcome.processing_time_ms < settings.speed_threshold_ms:
        reward += settings.speed_bonus
    if outcome.risk_score > settings.risk_threshold:
        reward -= settings.risk_penalty
    return clamp(reward, settings.lower, settings.upper)


def clamp(value: float, lower: float, upper: float) -> float:
    if math.isnan(value):
        return lower
    return max(lower, min(upper, value))
