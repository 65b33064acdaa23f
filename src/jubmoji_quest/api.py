from __future__ import annotations

"""HTTP API surface for goal lookups, lock status, and proof sessions."""

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .service import QuestService
from .telemetry import is_signature_like_text


class CardRecordPayload(BaseModel):
    """One owned Jubmoji as produced by the card scanner."""

    model_config = {"extra": "allow"}

    pubKeyIndex: int = Field(ge=0)
    sig: str = Field(min_length=1)


class CardsRequest(BaseModel):
    """Owned card records supplied by the caller for status or proving."""

    cards: list[CardRecordPayload] = Field(default_factory=list)


def _cards(body: CardsRequest) -> list[dict[str, Any]]:
    return [card.model_dump() for card in body.cards]


def create_app(service: QuestService) -> FastAPI:
    """Create API routes backed by `QuestService`."""

    app = FastAPI(title="Jubmoji Quest API", version="0.1")

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get("x-jubmoji-trace-id") or "").strip()
        trace_id = incoming if incoming and len(incoming) <= 200 and not is_signature_like_text(incoming) else ""
        if not trace_id:
            trace_id = f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            service.telemetry.log_event(
                "risk.flagged",
                source="api",
                trace_id=trace_id,
                data={
                    "reason": "api_internal_error",
                    "endpoint": request.url.path,
                    "error_type": exc.__class__.__name__,
                },
            )
            response = JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "Internal server error",
                    "trace_id": trace_id,
                },
            )
        response.headers["X-Jubmoji-Trace-Id"] = trace_id
        return response

    def request_trace_id(request: Request) -> str:
        value = getattr(request.state, "trace_id", None)
        if isinstance(value, str) and value:
            return value
        return f"api:{uuid4()}"

    @app.get("/v1/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "version": "0.1", "schema_versions": {"goal": "0.1", "nullifiers": "0.1"}}

    @app.get("/v1/quests")
    def list_quests() -> list[dict[str, Any]]:
        return service.list_goals()

    def goal_or_404(kind: str, goal_id: str) -> dict[str, Any]:
        try:
            return service.get_goal(kind, goal_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    def status_or_404(kind: str, goal_id: str, body: CardsRequest) -> dict[str, Any]:
        try:
            return service.goal_status(kind, goal_id, _cards(body))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    async def prove(kind: str, goal_id: str, body: CardsRequest, request: Request) -> Any:
        try:
            result = await service.run_session(
                kind,
                goal_id,
                _cards(body),
                source="api",
                trace_id=request_trace_id(request),
            )
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        payload = result.to_dict()
        if result.ok:
            return payload
        status_code = {"not_found": 404, "storage_error": 500}.get(payload["reason"], 409)
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/v1/quests/{quest_id}")
    def get_quest(quest_id: str) -> dict[str, Any]:
        return goal_or_404("quest", quest_id)

    @app.get("/v1/powers/{power_id}")
    def get_power(power_id: str) -> dict[str, Any]:
        return goal_or_404("power", power_id)

    @app.post("/v1/quests/{quest_id}/status")
    def quest_status(quest_id: str, body: CardsRequest) -> dict[str, Any]:
        return status_or_404("quest", quest_id, body)

    @app.post("/v1/powers/{power_id}/status")
    def power_status(power_id: str, body: CardsRequest) -> dict[str, Any]:
        return status_or_404("power", power_id, body)

    @app.post("/v1/quests/{quest_id}/overview")
    def quest_overview(quest_id: str, body: CardsRequest) -> dict[str, Any]:
        try:
            return service.quest_overview(quest_id, _cards(body))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/v1/quests/{quest_id}/prove")
    async def prove_quest(quest_id: str, body: CardsRequest, request: Request) -> Any:
        return await prove("quest", quest_id, body, request)

    @app.post("/v1/powers/{power_id}/prove")
    async def prove_power(power_id: str, body: CardsRequest, request: Request) -> Any:
        return await prove("power", power_id, body, request)

    @app.get("/v1/nullifiers")
    def get_nullifiers(kind: str | None = None, goal_id: str | None = None) -> dict[str, Any]:
        try:
            return service.get_nullifiers(kind, goal_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/cards/{index}")
    def get_card(index: int) -> dict[str, Any]:
        try:
            return service.get_card(index)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/v1/qr/{scan_id}")
    def resolve_qr(scan_id: str) -> dict[str, Any]:
        try:
            return service.resolve_qr(scan_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="QR Code not found") from exc

    return app
