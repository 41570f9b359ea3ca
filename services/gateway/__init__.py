"""
HTTP and WebSocket gateway for the cold-chain alert engine.

Exposes readings ingestion, alert actions, settings and live cold-cell
state over FastAPI. Escalation normally runs in the alert-engine service;
``gateway.run_engine_loops`` runs it in-process for single-node setups.
"""
