"""
PR Relay Ingress

HTTP edge: verifies signatures, shape-checks payloads and enqueues jobs.
The worker endpoint lives here too so a single service can serve both.

Usage:
    uvicorn prrelay.ingress.server:create_app --factory --port 8080
"""

from .server import create_app, run_server

__all__ = ["create_app", "run_server"]
