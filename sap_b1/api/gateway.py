"""
sap_b1.api.gateway - FastAPI diagnostics gateway
================================================

Optional REST surface for operating a connection: upstream health,
session state, pool maintenance and circuit breaker control.
"""

from __future__ import annotations

from dataclasses import asdict
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query

from sap_b1 import __version__
from sap_b1.core.connection import ConnectionContext
from sap_b1.core.errors import SapB1Error
from sap_b1.api.models import (
    CircuitBreakerResponse,
    HealthResponse,
    PoolActionResponse,
    PoolStatsResponse,
    SessionInfo,
)


class DiagnosticsGateway:
    """
    Configuration and connection factory for the API gateway.

    The connection is built on first use, so the app can be created
    before the SAP_B1_* environment is complete.
    """

    def __init__(
        self,
        context: Optional[ConnectionContext] = None,
        api_key: Optional[str] = None,
    ):
        self._context = context
        self.api_key = api_key or os.environ.get("SAP_B1_API_KEY", "")

    def validate(self) -> None:
        """Validate configuration. Raises RuntimeError if invalid."""
        if not self.api_key:
            raise RuntimeError("Missing SAP_B1_API_KEY - required for security")
        try:
            self.context
        except ValueError as e:
            raise RuntimeError(str(e)) from e

    @property
    def context(self) -> ConnectionContext:
        if self._context is None:
            self._context = ConnectionContext()
        return self._context


# Global gateway instance (lazy init)
_gateway: Optional[DiagnosticsGateway] = None


def get_gateway() -> DiagnosticsGateway:
    """Get or create the global gateway instance."""
    global _gateway
    if _gateway is None:
        _gateway = DiagnosticsGateway()
    return _gateway


def create_app(
    gateway: Optional[DiagnosticsGateway] = None,
    validate_on_startup: bool = True,
) -> FastAPI:
    """
    Create the FastAPI application.

    Parameters
    ----------
    gateway : DiagnosticsGateway, optional
        Custom gateway configuration. If None, reads from environment.
    validate_on_startup : bool
        If True, validate configuration on startup.

    Returns
    -------
    FastAPI
        Configured FastAPI application
    """
    global _gateway
    _gateway = gateway or DiagnosticsGateway()

    if validate_on_startup:
        try:
            _gateway.validate()
        except RuntimeError:
            # Allow app creation without validation for testing
            pass

    app = FastAPI(
        title="SAP Business One Service Layer Diagnostics",
        description="""
## SAP B1 Service Layer diagnostics

Inspect and operate the session pool, the shared session and the
circuit breaker of one Service Layer connection.

### Authentication
Include your API key in the `x-api-key` header.
        """,
        version=__version__,
        openapi_tags=[
            {"name": "Health", "description": "Gateway and upstream health"},
            {"name": "Session", "description": "Shared session of the connection"},
            {"name": "Pool", "description": "Session pool maintenance"},
            {"name": "Circuit Breaker", "description": "Breaker state and reset"},
        ],
    )

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    def require_api_key(x_api_key: str = Header(...)) -> None:
        gw = get_gateway()
        if gw.api_key and x_api_key != gw.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def connection() -> ConnectionContext:
        try:
            return get_gateway().context
        except ValueError as e:
            raise HTTPException(status_code=503, detail=str(e))

    def require_pool(ctx: ConnectionContext = Depends(connection)) -> ConnectionContext:
        if ctx.pool is None:
            raise HTTPException(status_code=404, detail="Session pool is not enabled for this connection")
        return ctx

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    @app.get("/health", tags=["Health"])
    def health() -> Dict[str, Any]:
        """Health check endpoint."""
        return {"ok": True, "version": __version__}

    @app.get("/health/upstream", tags=["Health"], response_model=HealthResponse)
    def upstream_health(
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(connection),
    ) -> HealthResponse:
        """Log in (or reuse the session) and probe the Service Layer."""
        result = ctx.health()
        return HealthResponse(**result.to_dict())

    @app.get("/session", tags=["Session"], response_model=SessionInfo)
    def session_info(
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(connection),
    ) -> SessionInfo:
        session = ctx.session_store.get(ctx.name)
        if session is None:
            return SessionInfo(connection=ctx.name, has_valid_session=False)
        return SessionInfo(
            connection=ctx.name,
            has_valid_session=not session.is_expired(),
            session_id=session.short_id,
            company_db=session.company_db,
            remaining_ttl=round(session.remaining_ttl(), 1),
        )

    @app.delete("/session", tags=["Session"])
    def logout(
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(connection),
    ) -> Dict[str, Any]:
        """Log out remotely and forget the shared session."""
        ctx.manager.logout(ctx.name)
        return {"ok": True, "connection": ctx.name}

    @app.get("/pool/stats", tags=["Pool"], response_model=PoolStatsResponse)
    def pool_stats(
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(require_pool),
    ) -> PoolStatsResponse:
        stats = ctx.pool.stats(ctx.name)
        return PoolStatsResponse(connection=ctx.name, **asdict(stats))

    @app.post("/pool/warmup", tags=["Pool"], response_model=PoolActionResponse)
    def pool_warmup(
        count: Optional[int] = Query(default=None, ge=1, description="Target size; defaults to min_size"),
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(require_pool),
    ) -> PoolActionResponse:
        try:
            created = ctx.pool.warm_up(ctx.name, count)
        except SapB1Error as e:
            raise HTTPException(status_code=502, detail=str(e))
        return PoolActionResponse(connection=ctx.name, action="warmup", count=created)

    @app.post("/pool/drain", tags=["Pool"], response_model=PoolActionResponse)
    def pool_drain(
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(require_pool),
    ) -> PoolActionResponse:
        removed = ctx.pool.drain(ctx.name)
        return PoolActionResponse(connection=ctx.name, action="drain", count=removed)

    @app.post("/pool/cleanup", tags=["Pool"], response_model=PoolActionResponse)
    def pool_cleanup(
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(require_pool),
    ) -> PoolActionResponse:
        removed = ctx.pool.cleanup(ctx.name)
        return PoolActionResponse(connection=ctx.name, action="cleanup", count=removed)

    @app.get("/circuit-breaker", tags=["Circuit Breaker"], response_model=CircuitBreakerResponse)
    def circuit_breaker(
        scope: str = Query(default="*", examples=["*"]),
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(connection),
    ) -> CircuitBreakerResponse:
        return CircuitBreakerResponse(connection=ctx.name, **ctx.breaker.stats(scope).to_dict())

    @app.post("/circuit-breaker/reset", tags=["Circuit Breaker"], response_model=CircuitBreakerResponse)
    def circuit_breaker_reset(
        scope: str = Query(default="*", examples=["*"]),
        _: None = Depends(require_api_key),
        ctx: ConnectionContext = Depends(connection),
    ) -> CircuitBreakerResponse:
        ctx.breaker.reset(scope)
        return CircuitBreakerResponse(connection=ctx.name, **ctx.breaker.stats(scope).to_dict())

    return app
