"""Static workout templates consumed by the week builder and fallbacks."""
from typing import Dict, List

from azuka.models.schemas import Intensity, Phase, Readiness


# Default readiness per phase before any signal-based adjustment.
PHASE_READINESS: Dict[Phase, Readiness] = {
    Phase.MENSTRUAL: Readiness.GENTLE,
    Phase.FOLLICULAR: Readiness.PUSH,
    Phase.OVULATORY: Readiness.PUSH,
    Phase.LUTEAL: Readiness.MAINTAIN,
}

# Workout types in the highest intensity tier; stress overrides never allow these.
HIGH_TIER_TYPES = {"hiit", "strength", "plyometrics", "power", "sprint", "tempo", "intervals"}
LOWEST_TIER_TYPE = "Mobility"

WORKOUT_LIBRARY: Dict[Readiness, List[dict]] = {
    Readiness.PUSH: [
        {"title": "Lower Body Strength", "type": "Strength", "duration_min": 45, "intensity": Intensity.HIGH},
        {"title": "HIIT Intervals", "type": "HIIT", "duration_min": 30, "intensity": Intensity.HIGH},
        {"title": "Upper Body Strength", "type": "Strength", "duration_min": 45, "intensity": Intensity.HIGH},
        {"title": "Zone 2 Ride", "type": "Cardio", "duration_min": 45, "intensity": Intensity.MODERATE},
        {"title": "Full Body Power", "type": "Strength", "duration_min": 40, "intensity": Intensity.HIGH},
        {"title": "Stability & Core", "type": "Strength", "duration_min": 30, "intensity": Intensity.MODERATE},
        {"title": "Rest", "type": "Rest", "duration_min": 0, "intensity": Intensity.LOW},
    ],
    Readiness.MAINTAIN: [
        {"title": "Strength Maintenance", "type": "Strength", "duration_min": 40, "intensity": Intensity.MODERATE},
        {"title": "Zone 2 Walk-Jog", "type": "Cardio", "duration_min": 40, "intensity": Intensity.MODERATE},
        {"title": "Pilates Flow", "type": "Mobility", "duration_min": 35, "intensity": Intensity.LOW},
        {"title": "Functional Strength", "type": "Strength", "duration_min": 35, "intensity": Intensity.MODERATE},
        {"title": "Steady State Cardio", "type": "Cardio", "duration_min": 35, "intensity": Intensity.MODERATE},
        {"title": "Yoga Flow", "type": "Yoga", "duration_min": 30, "intensity": Intensity.LOW},
        {"title": "Rest", "type": "Rest", "duration_min": 0, "intensity": Intensity.LOW},
    ],
    Readiness.GENTLE: [
        {"title": "Restorative Yoga", "type": "Yoga", "duration_min": 25, "intensity": Intensity.LOW},
        {"title": "Easy Walk", "type": "Walk", "duration_min": 30, "intensity": Intensity.LOW},
        {"title": "Pelvic Floor & Mobility", "type": "Mobility", "duration_min": 20, "intensity": Intensity.LOW},
        {"title": "Light Bodyweight Circuit", "type": "Strength", "duration_min": 20, "intensity": Intensity.LOW},
        {"title": "Rest", "type": "Rest", "duration_min": 0, "intensity": Intensity.LOW},
    ],
    Readiness.RECOVER: [
        {"title": "Rest", "type": "Rest", "duration_min": 0, "intensity": Intensity.LOW},
        {"title": "Gentle Stretch", "type": "Mobility", "duration_min": 15, "intensity": Intensity.LOW},
        {"title": "Easy Walk", "type": "Walk", "duration_min": 20, "intensity": Intensity.LOW},
    ],
}


def is_high_tier(workout_type: str | None) -> bool:
    return (workout_type or "").strip().lower() in HIGH_TIER_TYPES
