"""Engine inputs built from stored telemetry."""
from health_alerts.monitoring.snapshot import HealthSnapshotBuilder, build_snapshot
from health_alerts.monitoring.trends import TrendAnalyzer, summarize

__all__ = [
    "HealthSnapshotBuilder",
    "TrendAnalyzer",
    "build_snapshot",
    "summarize",
]
