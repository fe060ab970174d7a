"""
Service information routes: runtimes and health.
"""
from fastapi import APIRouter

from sandpit.api.dependencies import get_gateway
from sandpit.api.exceptions import handle_route_exceptions
from sandpit.api.models.schemas import HealthResponse, RuntimesResponse

router = APIRouter(tags=["service"])


@router.get("/runtimes", response_model=RuntimesResponse)
@handle_route_exceptions
async def list_runtimes():
    return RuntimesResponse(runtimes=get_gateway().list_runtimes())


@router.get("/health", response_model=HealthResponse)
@handle_route_exceptions
async def health():
    return get_gateway().get_service_status()
