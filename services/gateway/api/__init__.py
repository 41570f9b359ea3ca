"""
REST API endpoints for the gateway.

This package provides FastAPI routers for:
- Readings: Device readings and heartbeats
- Alerts: Listing, acknowledgment, resolution and manual escalation
- State: Live cold-cell snapshot for polling clients
- Settings: Cold-cell thresholds and customer escalation windows
- Health: Storage and engine status
"""
