"""
Service Health Alerting Engine.

Evaluates declarative alert rules against rolling service telemetry, detects
statistical anomalies, aggregates and silences alert bursts, and escalates
unresolved alerts through a severity ladder. Telemetry collection, dashboards
and notification channel internals live outside this package.
"""

__version__ = "0.1.0"
