"""
Actions Module
Background engines acting on dose events
"""

from .missed_dose_detector import (
    DetectionResult,
    MissedDoseDetector,
    MissedDoseMonitor,
    missed_dose_monitor
)


__all__ = [
    "DetectionResult",
    "MissedDoseDetector",
    "MissedDoseMonitor",
    "missed_dose_monitor",
]
