"""
Deployable service entry points for the cold-chain alert engine.

Each subdirectory contains a standalone service.

Services:
    alert-engine: Escalation scheduler, device sweeps and notification dispatch
    gateway: FastAPI readings ingestion, alert actions, settings and live state
"""
