"""Canonical error envelope for all hub service responses.

Standardized structure:
{
  "error": {
    "code": "string",
    "message": "string",
    "http_status": 404,
    "resource_kind": "hub | file | null",
    "details": {}
  }
}

Messages come from the error classes and never include store hostnames,
keys or stack traces.
"""
from __future__ import annotations

from typing import Any, Dict, NoReturn, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ephemeral.common.errors import HubError


class ErrorDetail(BaseModel):
    """Canonical error detail structure."""
    code: str
    message: str
    http_status: int
    resource_kind: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorEnvelope(BaseModel):
    """Top-level error envelope returned by every endpoint."""
    error: ErrorDetail


def build_error_envelope(
    code: str,
    message: str,
    status_code: int = 400,
    resource_kind: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> ErrorEnvelope:
    """Construct an ErrorEnvelope (without raising)."""
    return ErrorEnvelope(
        error=ErrorDetail(
            code=code,
            message=message,
            http_status=status_code,
            resource_kind=resource_kind,
            details=details or {},
        )
    )


def error_response(
    code: str,
    message: str,
    status_code: int = 400,
    resource_kind: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> NoReturn:
    """Raise an HTTPException carrying the canonical envelope.

    Args:
        code: Machine-readable error code (e.g., "hub.not_found")
        message: Human-readable error message
        status_code: HTTP status code (default 400)
        resource_kind: The resource type (hub, file)
        details: Additional context dict
    """
    envelope = build_error_envelope(
        code=code,
        message=message,
        status_code=status_code,
        resource_kind=resource_kind,
        details=details,
    )
    raise HTTPException(status_code=status_code, detail=envelope.model_dump())


def raise_hub_error(exc: HubError, resource_kind: str = "hub") -> NoReturn:
    error_response(
        code=exc.code,
        message=exc.public_message,
        status_code=exc.http_status,
        resource_kind=resource_kind,
        details=exc.details,
    )


# --- App-level handlers ---

async def _http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        return JSONResponse(content=detail, status_code=exc.status_code, headers=exc.headers)
    envelope = build_error_envelope(
        code="http.exception",
        message=str(detail) if detail else "HTTP exception",
        status_code=exc.status_code,
    )
    return JSONResponse(content=envelope.model_dump(), status_code=exc.status_code, headers=exc.headers)


async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    envelope = build_error_envelope(
        code="validation.error",
        message="Validation failed",
        status_code=422,
        details={"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
    )
    return JSONResponse(content=envelope.model_dump(), status_code=422)


async def _hub_error_handler(request: Request, exc: HubError):
    envelope = build_error_envelope(
        code=exc.code,
        message=exc.public_message,
        status_code=exc.http_status,
        resource_kind="hub",
        details=exc.details,
    )
    return JSONResponse(content=envelope.model_dump(), status_code=exc.http_status)


async def _generic_exception_handler(request: Request, exc: Exception):
    envelope = build_error_envelope(
        code="internal.error",
        message="Internal server error",
        status_code=500,
    )
    return JSONResponse(content=envelope.model_dump(), status_code=500)


def register_error_handlers(target_app: FastAPI) -> None:
    target_app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    target_app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    target_app.add_exception_handler(HubError, _hub_error_handler)
    target_app.add_exception_handler(Exception, _generic_exception_handler)
