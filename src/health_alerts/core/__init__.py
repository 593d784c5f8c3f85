"""Service runtime."""
from health_alerts.core.evaluation_loop import EvaluationLoop, EvaluationLoopConfig, TickStats

__all__ = ["EvaluationLoop", "EvaluationLoopConfig", "TickStats"]
