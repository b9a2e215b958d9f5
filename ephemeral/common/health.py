"""Health checks for load balancers and orchestrators."""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

router = APIRouter(tags=["system"])


class HealthStatus(BaseModel):
    status: str
    version: str = "0.1.0"


@router.get("/health", response_model=HealthStatus)
def health_check():
    return HealthStatus(status="ok")


@router.get("/ready", response_model=HealthStatus)
async def readiness_check(request: Request):
    service = request.app.state.hub_service
    if not await service.metadata.ping():
        return JSONResponse(status_code=503, content=HealthStatus(status="unavailable").model_dump())
    return HealthStatus(status="ok")
