"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
from uuid import UUID

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from fleetdispatch.config import get_settings
from fleetdispatch.core import DispatchCore
from fleetdispatch.errors import NotFound
from fleetdispatch.services.broadcaster import ALL_DRIVERS_TOPIC, driver_topic, order_topic
from fleetdispatch.state.drivers import driver_payload
from fleetdispatch.state.orders import order_payload
from fleetdispatch.utils.logging import get_logger, setup_logging

# Setup logging first
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    logger.info("application_starting")

    core = DispatchCore(get_settings())
    await core.start()
    app.state.core = core

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await core.stop()


# Create FastAPI app
app = FastAPI(
    title="Fleet Dispatch",
    description="Realtime driver tracking and order dispatch for delivery fleets",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "fleet-dispatch"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Fleet Dispatch API",
        "docs": "/docs",
        "health": "/health",
    }


# Import and include routers
from fleetdispatch.api.routes import router
from fleetdispatch.api.websocket import handle_subscription

app.include_router(router, prefix="/api/v1", tags=["api"])


# WebSocket endpoints
@app.websocket("/ws/drivers")
async def drivers_websocket(websocket: WebSocket) -> None:
    """Live feed of every driver for the admin map."""
    core: DispatchCore = websocket.app.state.core

    async def load_snapshot() -> list[dict[str, Any]]:
        return [driver_payload(driver) for driver in await core.drivers.list_drivers()]

    await handle_subscription(websocket, core, ALL_DRIVERS_TOPIC, load_snapshot)


@app.websocket("/ws/drivers/{driver_id}")
async def driver_websocket(websocket: WebSocket, driver_id: str) -> None:
    """Live feed of one driver, including orders assigned to it."""
    core: DispatchCore = websocket.app.state.core

    try:
        driver_uuid = UUID(driver_id)
        await core.drivers.snapshot(driver_uuid)
    except ValueError:
        await websocket.close(code=1003, reason="Invalid driver ID")
        return
    except NotFound:
        await websocket.close(code=1008, reason="Unknown driver")
        return

    async def load_snapshot() -> dict[str, Any]:
        return driver_payload(await core.drivers.snapshot(driver_uuid))

    await handle_subscription(websocket, core, driver_topic(driver_uuid), load_snapshot)


@app.websocket("/ws/orders/{order_id}")
async def order_websocket(websocket: WebSocket, order_id: str) -> None:
    """Live feed of one order for customer tracking."""
    core: DispatchCore = websocket.app.state.core

    try:
        order_uuid = UUID(order_id)
        await core.orders.snapshot(order_uuid)
    except ValueError:
        await websocket.close(code=1003, reason="Invalid order ID")
        return
    except NotFound:
        await websocket.close(code=1008, reason="Unknown order")
        return

    async def load_snapshot() -> dict[str, Any]:
        return order_payload(await core.orders.snapshot(order_uuid))

    await handle_subscription(websocket, core, order_topic(order_uuid), load_snapshot)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fleetdispatch.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
