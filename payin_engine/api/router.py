"""HTTP routes for payin selection, outcome reporting and engine administration."""

import asyncio
from datetime import datetime
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payin_engine.core.config import AppSettings
from payin_engine.models.enums import AmountTier, GeoMatch, TierMatch
from payin_engine.models.exceptions import (
    BreakerResetConflict,
    EngineError,
    InvalidRequest,
    ModelNotFoundError,
    NoEligibleEndpoint,
    PoolExhausted,
    VersionConflictError,
)
from payin_engine.models.payins import OutcomeReport
from payin_engine.services.payin_engine_service import PayinEngineService


logger = logging.getLogger(__name__)

_SSE_POLL_SEC = 1.0
_SSE_KEEPALIVE_SEC = 15.0


class AlertAcknowledgeRequest(BaseModel):
    """Request payload for acknowledging an alert."""

    admin_id: str = Field(..., min_length=1, alias="adminId")

    model_config = ConfigDict(populate_by_name=True)


class EndpointLimitsRequest(BaseModel):
    """Request payload for editing endpoint tier and limits."""

    amount_tier: Optional[AmountTier] = Field(default=None, alias="amountTier")
    daily_limit: Optional[float] = Field(default=None, gt=0, alias="dailyLimit")
    per_txn_limit: Optional[float] = Field(default=None, gt=0, alias="perTxnLimit")

    model_config = ConfigDict(populate_by_name=True)


class CircuitResetRequest(BaseModel):
    """Optional payload naming who reset a breaker."""

    actor: str = Field(default="admin", min_length=1)


def _http_error(exc: Exception) -> HTTPException:
    """Map engine and repository failures onto HTTP status codes."""
    if isinstance(exc, EngineError):
        if isinstance(exc, InvalidRequest):
            code = status.HTTP_400_BAD_REQUEST
        elif isinstance(exc, (NoEligibleEndpoint, PoolExhausted)):
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            code = status.HTTP_409_CONFLICT
        return HTTPException(status_code=code, detail=exc.to_dict())
    if isinstance(exc, ModelNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, VersionConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _dump(models: List[Any]) -> List[Dict[str, Any]]:
    return [model.to_firestore() for model in models]


def build_router(settings: AppSettings, engine: PayinEngineService) -> APIRouter:
    """Build and return the top-level API router.

    Args:
        settings: Application settings payload.
        engine: Engine facade every route delegates to.

    Returns:
        APIRouter: Fully configured router with all endpoints.
    """
    router = APIRouter()

    @router.get("/", summary="Root endpoint")
    def read_root() -> dict:
        """Return a basic message confirming service availability."""
        return {"message": "{0} is running".format(settings.app_name)}

    @router.get("/health", summary="Health check")
    def health_check() -> dict:
        """Return service health status for probes and monitors."""
        return {"status": "ok", "backend": engine.repositories.backend}

    # ── Payins ───────────────────────────────────────────────────────────

    @router.post("/payins/select", summary="Select and reserve a collection endpoint")
    def select_endpoint(payload: Dict[str, Any] = Body(...)) -> dict:
        try:
            return engine.select_endpoint(payload)
        except (EngineError, ModelNotFoundError, VersionConflictError) as exc:
            logger.info("Selection rejected code=%s", getattr(exc, "code", type(exc).__name__))
            raise _http_error(exc)
        except Exception as exc:
            logger.exception("Selection failed amount=%s", payload.get("amount"))
            raise _http_error(exc)

    @router.post("/payins/outcome", summary="Report a terminal payin outcome")
    def report_outcome(payload: Dict[str, Any] = Body(...)) -> dict:
        try:
            report = OutcomeReport.model_validate(payload)
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            raise _http_error(InvalidRequest("Invalid outcome report", errors=errors))
        try:
            ack = engine.report_outcome(report.endpoint_id, report.outcome, report.reservation_id)
            return ack.model_dump(mode="json")
        except (EngineError, ModelNotFoundError, VersionConflictError) as exc:
            raise _http_error(exc)
        except Exception as exc:
            logger.exception("Outcome report failed endpoint_id=%s", report.endpoint_id)
            raise _http_error(exc)

    # ── Circuits ─────────────────────────────────────────────────────────

    @router.get("/admin/circuits", summary="Circuit breaker status per bank")
    def circuit_status() -> dict:
        return {"circuits": engine.get_circuit_status()}

    @router.post("/admin/circuits/{bank}/reset", summary="Force a bank breaker closed")
    def reset_circuit(bank: str, payload: Optional[CircuitResetRequest] = None) -> dict:
        actor = payload.actor if payload else "admin"
        result = engine.reset_circuit(bank, actor)
        if not result.get("success"):
            if result.get("code") == BreakerResetConflict.code:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.get("error"))
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.get("error"))
        return result

    # ── Stats, logs and alerts ───────────────────────────────────────────

    @router.get("/admin/stats/realtime", summary="Last-hour routing statistics")
    def realtime_stats() -> dict:
        try:
            return engine.get_realtime_stats()
        except Exception as exc:
            logger.exception("Realtime stats failed")
            raise _http_error(exc)

    @router.get("/admin/stats/matches", summary="Tier and geo match breakdown")
    def match_breakdown(start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        try:
            return engine.get_match_breakdown(start, end)
        except Exception as exc:
            logger.exception("Match breakdown failed start=%s end=%s", start, end)
            raise _http_error(exc)

    @router.get("/admin/selection-logs", summary="Query selection logs")
    def selection_logs(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        bank: Optional[str] = None,
        tier_match: Optional[TierMatch] = None,
        geo_match: Optional[GeoMatch] = None,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> dict:
        logs = engine.query_selection_logs(start, end, bank, tier_match, geo_match, limit)
        return {"count": len(logs), "logs": _dump(logs)}

    @router.get("/admin/alerts", summary="List engine alerts")
    def list_alerts(unacknowledged_only: bool = False, limit: Optional[int] = Query(default=None, ge=1)) -> dict:
        alerts = engine.list_alerts(unacknowledged_only, limit)
        return {"count": len(alerts), "alerts": _dump(alerts)}

    @router.post("/admin/alerts/{alert_id}/ack", summary="Acknowledge an alert")
    def acknowledge_alert(alert_id: str, payload: AlertAcknowledgeRequest) -> dict:
        try:
            return engine.acknowledge_alert(alert_id, payload.admin_id).to_firestore()
        except (ModelNotFoundError, VersionConflictError) as exc:
            raise _http_error(exc)

    # ── Endpoint administration ──────────────────────────────────────────

    @router.get("/admin/endpoints", summary="List pool endpoints")
    def list_endpoints(active_only: bool = False) -> dict:
        endpoints = engine.list_endpoints(active_only)
        return {"count": len(endpoints), "endpoints": _dump(endpoints)}

    @router.post("/admin/endpoints", status_code=status.HTTP_201_CREATED, summary="Register an endpoint")
    def register_endpoint(payload: Dict[str, Any] = Body(...)) -> dict:
        try:
            return engine.register_endpoint(payload).to_firestore()
        except (EngineError, VersionConflictError) as exc:
            raise _http_error(exc)
        except Exception as exc:
            logger.exception("Endpoint registration failed upi_id=%s", payload.get("upi_id"))
            raise _http_error(exc)

    @router.post("/admin/endpoints/{endpoint_id}/active/{flag}", summary="Toggle endpoint activation")
    def set_endpoint_active(endpoint_id: str, flag: bool) -> dict:
        try:
            return engine.set_endpoint_active(endpoint_id, flag).to_firestore()
        except (ModelNotFoundError, VersionConflictError) as exc:
            raise _http_error(exc)

    @router.patch("/admin/endpoints/{endpoint_id}/limits", summary="Edit endpoint tier and limits")
    def update_endpoint_limits(endpoint_id: str, payload: EndpointLimitsRequest) -> dict:
        try:
            endpoint = engine.update_endpoint_limits(
                endpoint_id,
                amount_tier=payload.amount_tier,
                daily_limit=payload.daily_limit,
                per_txn_limit=payload.per_txn_limit,
            )
            return endpoint.to_firestore()
        except (EngineError, ModelNotFoundError, VersionConflictError) as exc:
            raise _http_error(exc)

    @router.post("/admin/endpoints/{endpoint_id}/geo/refresh", summary="Refresh endpoint geography from IFSC")
    def refresh_endpoint_geo(endpoint_id: str) -> dict:
        try:
            return engine.refresh_endpoint_geo(endpoint_id).to_firestore()
        except (EngineError, ModelNotFoundError, VersionConflictError) as exc:
            raise _http_error(exc)
        except RuntimeError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    # ── Event stream ─────────────────────────────────────────────────────

    @router.get("/admin/events", summary="Server-sent stream of engine events")
    async def engine_events(request: Request, types: Optional[str] = None) -> StreamingResponse:
        event_types = [item.strip() for item in types.split(",") if item.strip()] if types else None
        subscription = engine.subscribe(event_types)

        async def _stream():
            idle = 0.0
            try:
                while not await request.is_disconnected():
                    event = await asyncio.to_thread(subscription.get, _SSE_POLL_SEC)
                    if event is None:
                        idle += _SSE_POLL_SEC
                        if idle >= _SSE_KEEPALIVE_SEC:
                            idle = 0.0
                            yield ": keepalive\n\n"
                        continue
                    idle = 0.0
                    yield "event: {0}\ndata: {1}\n\n".format(event.event_type, json.dumps(event.to_dict(), default=str))
            finally:
                subscription.close()

        return StreamingResponse(_stream(), media_type="text/event-stream")

    return router
