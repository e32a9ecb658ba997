"""
Temporal decay functions for the memory engine.

Each decay kind is a small strategy object mapping an age in hours to a
score multiplier in [0, 1]. ``resolve_decay_function`` turns a loosely typed
selector (enum, string, anything) into one of them, falling back to
exponential decay for unknown selectors.
"""

import math
import logging
from enum import Enum
from typing import Any, Dict

logger = logging.getLogger(__name__)

DEFAULT_LAMBDA = 0.1
DEFAULT_MAX_HOURS = 168.0
DEFAULT_STEP_THRESHOLD_HOURS = 24.0
DEFAULT_STEP_PENALTY = 0.5


class DecayFunction(Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    LOGARITHMIC = "logarithmic"
    STEP = "step"


class ExponentialDecay:
    """e^(-lambda * age)"""

    def __init__(self, decay_lambda: float = DEFAULT_LAMBDA):
        self.decay_lambda = decay_lambda

    def __call__(self, age_hours: float) -> float:
        return math.exp(-self.decay_lambda * max(age_hours, 0.0))


class LinearDecay:
    """max(0, 1 - age / max_hours)"""

    def __init__(self, max_hours: float = DEFAULT_MAX_HOURS):
        self.max_hours = max_hours

    def __call__(self, age_hours: float) -> float:
        if self.max_hours <= 0:
            return 0.0
        return max(0.0, 1.0 - max(age_hours, 0.0) / self.max_hours)


class LogarithmicDecay:
    """1 / (1 + ln(1 + age))"""

    def __call__(self, age_hours: float) -> float:
        return 1.0 / (1.0 + math.log(1.0 + max(age_hours, 0.0)))


class StepDecay:
    """Full score inside the threshold window, flat penalty afterwards."""

    def __init__(self, threshold_hours: float = DEFAULT_STEP_THRESHOLD_HOURS,
                 penalty: float = DEFAULT_STEP_PENALTY):
        self.threshold_hours = threshold_hours
        self.penalty = penalty

    def __call__(self, age_hours: float) -> float:
        return 1.0 if age_hours <= self.threshold_hours else self.penalty


def parse_decay_function(selector: Any) -> DecayFunction:
    """Map a selector to a DecayFunction; unknown selectors become EXPONENTIAL."""
    if isinstance(selector, DecayFunction):
        return selector
    if isinstance(selector, str):
        try:
            return DecayFunction(selector.strip().lower())
        except ValueError:
            pass
    logger.warning(f"Unknown decay function '{selector}', using exponential")
    return DecayFunction.EXPONENTIAL


def resolve_decay_function(selector: Any, params: Dict[str, float] = None):
    """Build the decay strategy for ``selector`` with the given parameters.

    Args:
        selector: DecayFunction, its string value, or anything else (falls back)
        params: optional keys decay_lambda, max_hours, step_threshold_hours,
            step_penalty

    Returns:
        A callable ``(age_hours) -> float``
    """
    params = params or {}
    kind = parse_decay_function(selector)

    if kind == DecayFunction.LINEAR:
        return LinearDecay(params.get("max_hours", DEFAULT_MAX_HOURS))
    if kind == DecayFunction.LOGARITHMIC:
        return LogarithmicDecay()
    if kind == DecayFunction.STEP:
        return StepDecay(
            params.get("step_threshold_hours", DEFAULT_STEP_THRESHOLD_HOURS),
            params.get("step_penalty", DEFAULT_STEP_PENALTY),
        )
    return ExponentialDecay(params.get("decay_lambda", DEFAULT_LAMBDA))


def temporal_score(age_hours: float, config) -> float:
    """Decay score for ``age_hours`` under a TimeWeightedConfig-like object."""
    fn = resolve_decay_function(config.decay_function, {
        "decay_lambda": config.decay_lambda,
        "max_hours": config.max_hours,
        "step_threshold_hours": config.step_threshold_hours,
        "step_penalty": config.step_penalty,
    })
    return fn(age_hours)


def importance_decay(importance: float, age_days: float, decay_rate: float) -> float:
    """Daily importance decay applied during consolidation."""
    return importance * math.exp(-decay_rate * max(age_days, 0.0))
