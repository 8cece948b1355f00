"""
Inspection API - FastAPI endpoints for plans, state, drift and events.

The API never applies changes; it lets operators preview plans, inspect the
recorded state, trigger a drift check and follow engine events as
Server-Sent Events.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from converge.base import DesiredInstance, InstanceKey
from converge.engine import Engine
from converge.errors import CyclicDependency, SchemaMismatch, StateConflict, StateLocked
from converge.events import EventBus
from converge.values import values_from_python

logger = logging.getLogger(__name__)

# Instance type and name: letters, digits, '_' and '-'
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


def validate_identifier(value: str, field_name: str) -> str:
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if not IDENTIFIER_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must start with a letter or '_' and contain only "
            f"letters, digits, '_' or '-'"
        )
    return value


class ResourceEntry(BaseModel):
    """One desired instance in a plan request."""

    type: str = Field(..., description="Resource type", examples=["bucket"])
    name: str = Field(..., description="Local instance name", examples=["logs"])
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    @field_validator("type", "name")
    @classmethod
    def validate_names(cls, v: str, info) -> str:
        return validate_identifier(v, info.field_name)

    def to_desired(self) -> DesiredInstance:
        return DesiredInstance(
            key=InstanceKey(self.type, self.name),
            attributes=values_from_python(self.attributes),
            depends_on=[InstanceKey.parse(d) for d in self.depends_on],
        )


class PlanRequest(BaseModel):
    """Request model for previewing a plan."""

    resources: List[ResourceEntry] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    service: str
    schemas: List[str]
    provider: str


def create_app(engine: Engine, event_bus: Optional[EventBus] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Routes:
        - Health check: GET /
        - Plan preview: POST /api/v1/plan
        - State: GET /api/v1/state, GET /api/v1/state/{address}
        - Drift check: POST /api/v1/refresh
        - Schemas: GET /api/v1/schemas
        - Events: GET /api/v1/events (SSE)
    """
    app = FastAPI(
        title="Converge Inspection API",
        description="Read-only view of plans, state and drift",
        version="1.0.0",
    )

    @app.get("/", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="ok",
            service="converge",
            schemas=engine.registry.list_types(),
            provider=engine.provider.name,
        )

    @app.post("/api/v1/plan")
    async def preview_plan(request: PlanRequest):
        """Compute the plan for a configuration without applying it."""
        try:
            desired = [entry.to_desired() for entry in request.resources]
            plan = await engine.plan(desired)
        except (SchemaMismatch, CyclicDependency, ValueError) as e:
            raise HTTPException(status_code=422, detail=str(e))
        except Exception as e:
            logger.error(f"Error building plan: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return plan.to_dict()

    @app.get("/api/v1/state")
    async def get_state():
        """Return the latest recorded snapshot."""
        snapshot = await engine.store.read()
        return snapshot.to_dict()

    @app.get("/api/v1/state/{address}")
    async def get_instance(address: str):
        """Return one recorded instance by ``type.name`` address."""
        try:
            key = InstanceKey.parse(address)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        snapshot = await engine.store.read()
        instance = snapshot.get(key)
        if instance is None:
            raise HTTPException(status_code=404, detail=f"{address} is not in state")
        return instance.to_dict()

    @app.post("/api/v1/refresh")
    async def refresh():
        """Run a drift check now."""
        try:
            report = await engine.refresh()
        except (StateLocked, StateConflict) as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Error running drift check: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return report.to_dict()

    @app.get("/api/v1/schemas")
    async def list_schemas():
        """List registered resource schemas."""
        result = []
        for type_name in engine.registry.list_types():
            schema = engine.registry.get(type_name)
            result.append(
                {
                    "type": schema.type_name,
                    "version": schema.version,
                    "replace_policy": schema.replace_policy.value,
                    "attributes": {
                        a.name: {
                            "type": a.type.value,
                            "mutability": a.mutability.value,
                            "presence": a.presence.value,
                        }
                        for a in schema.attributes
                    },
                }
            )
        return result

    @app.get("/api/v1/events")
    async def stream_events(
        instance: Optional[str] = None,
        last_event_id: Optional[int] = Header(None, alias="Last-Event-ID"),
    ):
        """
        SSE stream of engine events, optionally for one instance.

        A reconnecting client sending ``Last-Event-ID`` first receives the
        buffered events it missed.
        """
        if event_bus is None:
            raise HTTPException(status_code=503, detail="Event streaming not available")

        filter_fn = None
        if instance:
            filter_fn = lambda event: event.instance == instance  # noqa: E731

        subscriber_id, subscription = await event_bus.subscribe(filter_fn, since=last_event_id)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class APIServer:
    """Runs the inspection API under uvicorn."""

    def __init__(
        self,
        engine: Engine,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
        log_level: str = "info",
    ):
        self.app = create_app(engine, event_bus)
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting inspection API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping inspection API")
        if self.server:
            self.server.should_exit = True

