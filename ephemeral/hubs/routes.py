"""Hub REST routes."""
from __future__ import annotations

import json
from typing import List, Optional, Union

from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi.responses import RedirectResponse, StreamingResponse
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from ephemeral.common.error_envelope import error_response, raise_hub_error
from ephemeral.common.errors import HubError, TooLarge
from ephemeral.hubs.archive import iter_chunks
from ephemeral.hubs.models import (
    ConfirmUploadRequest,
    CreateHubRequest,
    FileEntry,
    HubSummary,
    HubView,
    UploadRequest,
    UploadTicket,
)
from ephemeral.hubs.service import HubService

router = APIRouter(prefix="/api/hubs", tags=["hubs"])

# Boundaries, part headers and small form fields around the file payload.
MULTIPART_OVERHEAD_BYTES = 64 * 1024


def get_service(request: Request) -> HubService:
    return request.app.state.hub_service


async def _read_text_body(request: Request, limit: int) -> str:
    """Read the raw body, refusing to buffer more than `limit` bytes."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise TooLarge(limit)
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise TooLarge(limit)
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        error_response(
            code="hub.invalid_text",
            message="Text body must be UTF-8",
            status_code=400,
            resource_kind="hub",
        )


@router.post("", response_model=HubSummary, status_code=201)
async def create_hub(
    payload: Optional[CreateHubRequest] = Body(None),
    service: HubService = Depends(get_service),
) -> HubSummary:
    try:
        return await service.create_hub(payload.ttl_seconds if payload else None)
    except HubError as exc:
        raise_hub_error(exc)


@router.get("/{hub_id}", response_model=HubView)
async def get_hub(hub_id: str, service: HubService = Depends(get_service)) -> HubView:
    try:
        return await service.get_hub(hub_id)
    except HubError as exc:
        raise_hub_error(exc)


@router.put("/{hub_id}/text", status_code=204)
async def update_text(hub_id: str, request: Request, service: HubService = Depends(get_service)) -> Response:
    try:
        content = await _read_text_body(request, service.settings.max_text_bytes)
        await service.set_text(hub_id, content)
    except HubError as exc:
        raise_hub_error(exc)
    return Response(status_code=204)


@router.get("/{hub_id}/files", response_model=List[FileEntry])
async def list_files(hub_id: str, service: HubService = Depends(get_service)) -> List[FileEntry]:
    try:
        return await service.list_files(hub_id)
    except HubError as exc:
        raise_hub_error(exc)


def _check_multipart_length(request: Request, limit: int) -> None:
    """Refuse a multipart body before the parser spools it to disk."""
    declared = request.headers.get("content-length")
    if not declared or not declared.isdigit():
        error_response(
            code="hub.length_required",
            message="Multipart uploads must declare Content-Length",
            status_code=411,
            resource_kind="file",
        )
    if int(declared) > limit + MULTIPART_OVERHEAD_BYTES:
        raise TooLarge(limit)


async def _upload_parts(hub_id: str, request: Request, service: HubService) -> List[FileEntry]:
    _check_multipart_length(request, service.settings.max_file_bytes)
    form = await request.form()
    try:
        parts = [part for part in form.getlist("file") if isinstance(part, UploadFile)]
        if not parts:
            error_response(
                code="hub.missing_file",
                message="Multipart body must contain a 'file' part",
                status_code=400,
                resource_kind="file",
            )
        entries = []
        for part in parts:
            entries.append(
                await service.upload_file(hub_id, part.filename or "unknown_file", part.file, part.content_type)
            )
        return entries
    finally:
        await form.close()


async def _confirm_upload(hub_id: str, request: Request, service: HubService) -> FileEntry:
    try:
        payload = ConfirmUploadRequest.model_validate(json.loads(await request.body() or b"{}"))
    except (ValueError, ValidationError):
        error_response(
            code="hub.invalid_confirmation",
            message="Expected JSON body with a 'filename'",
            status_code=400,
            resource_kind="file",
        )
    return await service.confirm_upload(hub_id, payload.filename)


@router.post("/{hub_id}/files", status_code=201, response_model=Union[FileEntry, List[FileEntry]])
async def add_files(hub_id: str, request: Request, service: HubService = Depends(get_service)):
    """Add files by multipart upload, or confirm a presigned upload with JSON."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("multipart/form-data"):
            entries = await _upload_parts(hub_id, request, service)
            return entries[0] if len(entries) == 1 else entries
        if content_type.startswith("application/json"):
            return await _confirm_upload(hub_id, request, service)
    except HubError as exc:
        raise_hub_error(exc, resource_kind="file")
    error_response(
        code="hub.unsupported_media_type",
        message="Use multipart/form-data or application/json",
        status_code=415,
        resource_kind="file",
    )


@router.post("/{hub_id}/uploads", response_model=UploadTicket, status_code=201)
async def request_upload(
    hub_id: str,
    payload: UploadRequest,
    service: HubService = Depends(get_service),
) -> UploadTicket:
    try:
        return await service.request_upload(hub_id, payload.filename, payload.content_type)
    except HubError as exc:
        raise_hub_error(exc, resource_kind="file")


@router.get("/{hub_id}/files/{filename}")
async def download_file(hub_id: str, filename: str, service: HubService = Depends(get_service)):
    try:
        url = await service.download_url(hub_id, filename)
    except HubError as exc:
        raise_hub_error(exc, resource_kind="file")
    return RedirectResponse(url, status_code=302)


@router.get("/{hub_id}/download")
async def download_archive(hub_id: str, service: HubService = Depends(get_service)):
    try:
        name, spool = await service.open_archive(hub_id)
    except HubError as exc:
        raise_hub_error(exc)
    return StreamingResponse(
        iter_chunks(spool),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )
