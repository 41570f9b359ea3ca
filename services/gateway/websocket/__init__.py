"""
WebSocket handlers for live cold-cell state.

This package provides WebSocket endpoints for:
- Live door state and today's counters
- Open alert summaries of one cold cell
"""
