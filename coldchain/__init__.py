"""
Cold-Chain Alert Engine.

Alert lifecycle and escalation engine for a cold-chain monitoring platform.
Refrigeration loggers submit periodic telemetry (temperature, door, power);
the engine evaluates per-unit thresholds and timers, creates and escalates
alerts through a three-layer notification ladder gated by the customer's
operating hours, and pushes live door/alert state to connected clients.

This package provides:
- Data models for cold cells, devices, readings, door state and alerts
- Configuration management
- The evaluation, alerting, escalation and broadcast engine
- State stores for memory and Redis, plus a PostgreSQL history recorder
"""

__version__ = "0.1.0"
