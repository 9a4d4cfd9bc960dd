"""
FastAPI operations dashboard.

Provides REST API over the alert engine with:
- GET /alerts, /alerts/stats, /alerts/{id} - Alert listing and detail
- POST /alerts/{id}/actions - Operator actions
- GET /monitoring/status, POST /monitoring/{job}/run - Scheduler control
- GET /health - Service health check
"""

from src.api.app import create_app

__all__ = ["create_app"]
