"""Arm-level data handling for nmapy."""

from nmapy.alignment.effect_measures import (
    ArmData,
    EffectMeasure,
    arms_to_contrasts,
    study_contrasts,
    log_odds_ratio,
    log_risk_ratio,
    mean_difference,
    standardized_mean_difference,
)

__all__ = [
    "ArmData",
    "EffectMeasure",
    "arms_to_contrasts",
    "study_contrasts",
    "log_odds_ratio",
    "log_risk_ratio",
    "mean_difference",
    "standardized_mean_difference",
]
