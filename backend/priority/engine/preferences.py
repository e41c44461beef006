# priority/engine/preferences.py

from dataclasses import dataclass
from typing import Dict, Optional

from priority.models import OptimizationPreference

AGGRESSIVENESS_CONSERVATIVE = "conservative"
AGGRESSIVENESS_BALANCED = "balanced"
AGGRESSIVENESS_AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class RunDefaults:
    max_changes: int
    min_confidence: float


# Aggressive owners accept more, less certain changes per run.
AGGRESSIVENESS_PRESETS: Dict[str, RunDefaults] = {
    AGGRESSIVENESS_CONSERVATIVE: RunDefaults(max_changes=5, min_confidence=0.85),
    AGGRESSIVENESS_BALANCED: RunDefaults(max_changes=10, min_confidence=0.7),
    AGGRESSIVENESS_AGGRESSIVE: RunDefaults(max_changes=20, min_confidence=0.55),
}


def get_preferences(user) -> OptimizationPreference:
    preferences, _created = OptimizationPreference.objects.get_or_create(user=user)
    return preferences


def run_defaults(user=None, preferences: Optional[OptimizationPreference] = None) -> RunDefaults:
    """Cap and threshold to use when a caller does not give them."""
    if preferences is None and user is not None:
        preferences = OptimizationPreference.objects.filter(user=user).first()
    level = preferences.aggressiveness if preferences else AGGRESSIVENESS_BALANCED
    return AGGRESSIVENESS_PRESETS.get(level, AGGRESSIVENESS_PRESETS[AGGRESSIVENESS_BALANCED])


def importance_weights(user) -> Dict[str, Dict[str, float]]:
    preferences = OptimizationPreference.objects.filter(user=user).first()
    if preferences is None:
        return {"category_weights": {}, "project_weights": {}}
    return {
        "category_weights": dict(preferences.category_weights or {}),
        "project_weights": dict(preferences.project_weights or {}),
    }
