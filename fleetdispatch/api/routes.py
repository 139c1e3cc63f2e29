"""API routes for the dispatch service."""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.requests import HTTPConnection

from fleetdispatch.core import DispatchCore
from fleetdispatch.errors import (
    AlreadyTerminal,
    DispatchError,
    InvalidInput,
    InvalidTransition,
    NotFound,
    VersionConflict,
)
from fleetdispatch.models.driver import Driver, DriverStatus, Location, LocationFix
from fleetdispatch.models.order import Order, OrderStatus
from fleetdispatch.services.ingest import IngestResult
from fleetdispatch.services.matcher import AssignmentResult
from fleetdispatch.state.drivers import driver_payload
from fleetdispatch.state.orders import order_payload
from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


# Request/Response Models


class CamelModel(BaseModel):
    """Accepts the camelCase field names used by the mobile and admin clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocationReport(CamelModel):
    """Position report from a driver client."""

    driver_id: UUID
    lat: float
    lng: float
    accuracy: float
    captured_at: datetime
    heading: float | None = None
    speed: float | None = None


class RegisterDriverRequest(CamelModel):
    """Driver handed over by onboarding."""

    id: UUID | None = None
    name: str = ""
    approved: bool = False


class StatusChangeRequest(CamelModel):
    """Version-gated driver status change."""

    status: DriverStatus
    expected_version: int


class VersionRequest(CamelModel):
    """Request carrying only the version the caller last observed."""

    expected_version: int


class VersionResponse(BaseModel):
    """New version after a mutation."""

    id: UUID
    version: int


class CreateOrderRequest(CamelModel):
    """New order from checkout."""

    id: UUID | None = None
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    metadata: dict[str, str] = Field(default_factory=dict)


class CreateOrderResponse(BaseModel):
    """Created order and the outcome of its first dispatch."""

    order_id: UUID
    assignment: AssignmentResult


class OrderTransitionRequest(CamelModel):
    """Version-gated order status change."""

    status: OrderStatus
    expected_version: int


class CancelOrderRequest(CamelModel):
    """Cancellation, or requeue when the order is still wanted."""

    requeue: bool = False
    reason: str | None = None


# Dependencies


def get_core(connection: HTTPConnection) -> DispatchCore:
    """Get the dispatch core created at startup."""
    return connection.app.state.core


def _http_error(error: DispatchError) -> HTTPException:
    if isinstance(error, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (VersionConflict, AlreadyTerminal)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, InvalidTransition):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, InvalidInput):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return HTTPException(status_code=code, detail=str(error))


# Ingest


@router.post("/locations", response_model=IngestResult)
async def record_location(
    report: LocationReport,
    core: DispatchCore = Depends(get_core),
) -> IngestResult:
    """
    Record a driver position report.

    Always answers 200; rejected fixes carry a reason code.
    """
    fix = LocationFix(**report.model_dump())
    return await core.ingest.record(fix)


# Driver endpoints


@router.post("/drivers", status_code=status.HTTP_201_CREATED)
async def register_driver(
    request: RegisterDriverRequest,
    core: DispatchCore = Depends(get_core),
) -> dict[str, Any]:
    """Register a driver handed over by onboarding."""
    fields = request.model_dump(exclude_none=True)

    try:
        driver = await core.drivers.register(Driver(**fields))
    except DispatchError as e:
        raise _http_error(e) from e

    return driver_payload(driver)


@router.get("/drivers")
async def list_drivers(core: DispatchCore = Depends(get_core)) -> list[dict[str, Any]]:
    """Get every driver (admin snapshot)."""
    drivers = await core.drivers.list_drivers()
    return [driver_payload(driver) for driver in drivers]


@router.get("/drivers/available")
async def list_available_drivers(
    lat: float | None = Query(default=None, ge=-90, le=90),
    lng: float | None = Query(default=None, ge=-180, le=180),
    radius_km: float | None = Query(default=None, gt=0),
    core: DispatchCore = Depends(get_core),
) -> list[dict[str, Any]]:
    """Get drivers eligible for dispatch, optionally near a point."""
    if (lat is None) != (lng is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="lat and lng must be given together",
        )

    center = Location(lat=lat, lng=lng) if lat is not None else None

    try:
        drivers = await core.drivers.list_available(
            within_radius_km=radius_km, center=center
        )
    except DispatchError as e:
        raise _http_error(e) from e

    return [driver_payload(driver) for driver in drivers]


@router.get("/drivers/{driver_id}")
async def get_driver(
    driver_id: UUID,
    core: DispatchCore = Depends(get_core),
) -> dict[str, Any]:
    """Get the current snapshot of a driver."""
    try:
        driver = await core.drivers.snapshot(driver_id)
    except DispatchError as e:
        raise _http_error(e) from e

    return driver_payload(driver)


@router.get("/drivers/{driver_id}/history")
async def get_driver_history(
    driver_id: UUID,
    core: DispatchCore = Depends(get_core),
) -> list[dict[str, Any]]:
    """Get the driver's recent accepted positions, oldest first."""
    try:
        positions = await core.drivers.history(driver_id)
    except DispatchError as e:
        raise _http_error(e) from e

    return [position.model_dump(mode="json") for position in positions]


@router.put("/drivers/{driver_id}/status", response_model=VersionResponse)
async def set_driver_status(
    driver_id: UUID,
    request: StatusChangeRequest,
    core: DispatchCore = Depends(get_core),
) -> VersionResponse:
    """
    Change a driver's status from the driver app.

    Signing off during a delivery puts the order back in the queue.
    """
    try:
        version = await core.drivers.set_status(
            driver_id, request.status, request.expected_version
        )
    except DispatchError as e:
        raise _http_error(e) from e

    return VersionResponse(id=driver_id, version=version)


# Order endpoints


@router.post(
    "/orders",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_order(
    request: CreateOrderRequest,
    core: DispatchCore = Depends(get_core),
) -> CreateOrderResponse:
    """
    Create an order and dispatch it.

    A ``no_driver_available`` assignment leaves the order pending; the caller
    decides when to retry through the dispatch endpoint.
    """
    order = Order(
        delivery_location=Location(lat=request.lat, lng=request.lng),
        metadata=request.metadata,
    )
    if request.id is not None:
        order.id = request.id

    try:
        assignment = await core.place_order(order)
    except DispatchError as e:
        raise _http_error(e) from e

    return CreateOrderResponse(order_id=order.id, assignment=assignment)


@router.get("/orders")
async def list_orders(
    order_status: OrderStatus | None = Query(default=None, alias="status"),
    core: DispatchCore = Depends(get_core),
) -> list[dict[str, Any]]:
    """Get orders, optionally filtered by status."""
    orders = await core.orders.list_orders(order_status)
    return [order_payload(order) for order in orders]


@router.get("/orders/{order_id}")
async def get_order(
    order_id: UUID,
    core: DispatchCore = Depends(get_core),
) -> dict[str, Any]:
    """Get the current snapshot of an order."""
    try:
        order = await core.orders.snapshot(order_id)
    except DispatchError as e:
        raise _http_error(e) from e

    return order_payload(order)


@router.post("/orders/{order_id}/transition", response_model=VersionResponse)
async def transition_order(
    order_id: UUID,
    request: OrderTransitionRequest,
    core: DispatchCore = Depends(get_core),
) -> VersionResponse:
    """Move an order along its lifecycle (en route, delivered, cancelled)."""
    try:
        version = await core.orders.transition(
            order_id, request.status, request.expected_version
        )
    except DispatchError as e:
        raise _http_error(e) from e

    return VersionResponse(id=order_id, version=version)


@router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: UUID,
    request: CancelOrderRequest = CancelOrderRequest(),
    core: DispatchCore = Depends(get_core),
) -> dict[str, Any]:
    """Cancel an order, freeing its driver."""
    try:
        order = await core.orders.cancel(
            order_id, requeue=request.requeue, reason=request.reason
        )
    except DispatchError as e:
        raise _http_error(e) from e

    logger.info(
        "order_cancelled_via_api",
        order_id=str(order_id),
        requeue=request.requeue,
    )
    return order_payload(order)


@router.post("/orders/{order_id}/dispatch", response_model=AssignmentResult)
async def dispatch_order(
    order_id: UUID,
    core: DispatchCore = Depends(get_core),
) -> AssignmentResult:
    """Retry dispatch of a pending order."""
    try:
        return await core.matcher.assign(order_id)
    except DispatchError as e:
        raise _http_error(e) from e


# Admin endpoints


@router.post("/admin/drivers/{driver_id}/status", response_model=VersionResponse)
async def override_driver_status(
    driver_id: UUID,
    request: StatusChangeRequest,
    core: DispatchCore = Depends(get_core),
) -> VersionResponse:
    """
    Force a driver offline or available outside the normal flow.

    Forcing a driver on a delivery offline hands its order back for a new
    driver in the same commit that signs the driver off.
    """
    try:
        driver = await core.drivers.snapshot(driver_id)

        if driver.status != DriverStatus.ON_DELIVERY:
            version = await core.drivers.set_status(
                driver_id, request.status, request.expected_version, override=True
            )
            return VersionResponse(id=driver_id, version=version)

        if request.status != DriverStatus.OFFLINE:
            raise InvalidTransition(
                driver.status.value, request.status.value, "cancel the order instead"
            )

        version = await core.drivers.set_status(
            driver_id, DriverStatus.OFFLINE, request.expected_version
        )

    except DispatchError as e:
        raise _http_error(e) from e

    logger.info("driver_forced_offline", driver_id=str(driver_id))
    return VersionResponse(id=driver_id, version=version)


@router.post("/admin/drivers/{driver_id}/deactivate", response_model=VersionResponse)
async def deactivate_driver(
    driver_id: UUID,
    request: VersionRequest,
    core: DispatchCore = Depends(get_core),
) -> VersionResponse:
    """Take a driver out of service."""
    try:
        version = await core.drivers.deactivate(driver_id, request.expected_version)
    except DispatchError as e:
        raise _http_error(e) from e

    return VersionResponse(id=driver_id, version=version)


@router.post("/admin/staleness/sweep")
async def sweep_stale_drivers(core: DispatchCore = Depends(get_core)) -> dict[str, Any]:
    """Run the staleness correction now."""
    demoted = await core.drivers.sweep_stale()
    return {"demoted": [str(driver_id) for driver_id in demoted]}
