"""
sap_b1.api - Optional diagnostics REST gateway
==============================================

This module provides an optional FastAPI-based gateway for operating a
Service Layer connection: upstream health, shared session, session pool
and circuit breaker.

Usage
-----
>>> from sap_b1.api import create_app
>>> app = create_app()
>>> # Run with: uvicorn sap_b1.api:app

Or run directly:
>>> python -m sap_b1.api

"""

from pathlib import Path

# Load .env before importing gateway
try:
    from dotenv import load_dotenv
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)
except ImportError:
    pass

from sap_b1.api.gateway import create_app, DiagnosticsGateway

# Create default app instance for uvicorn
app = create_app()

__all__ = [
    "create_app",
    "DiagnosticsGateway",
    "app",
]
