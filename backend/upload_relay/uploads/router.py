"""FastAPI router for upload endpoints.

Routes (all multipart/form-data):

    POST /api/upload/image      single file, field ``image``
    POST /api/upload/profile    single file, field ``avatar`` + form ``username``/``userId``
    POST /api/upload/document   single file, field ``document``
    POST /api/upload/images     up to 3 files, field ``images``
    POST /api/upload/bundle     fields ``profilepic`` (1), ``gallery`` (5), ``documents`` (3)
    DELETE /api/upload/{public_id}   remove a stored object

Single-file routes answer with the error's own status on failure.
Batch routes answer 200 when every file succeeded, 207 when some did, and
the most severe error status when none did.
"""
import logging
from typing import Dict, List

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from ..config import AppConfig
from .errors import UploadError
from .orchestrator import UploadOrchestrator, fixed_public_id, response_status
from .schemas import (
    AvatarRef,
    BatchUploadResponse,
    FieldRule,
    FieldsUploadResponse,
    FileOutcome,
    ProfileUploadResponse,
    ProfileUser,
    RemoteDeleteResponse,
    ResourceType,
    SingleUploadResponse,
)
from .transport import opened_upload_form

logger = logging.getLogger(__name__)

PREFIX = "/api/upload"

router = APIRouter(prefix=PREFIX, tags=["uploads"])

IMAGES_FIELD = "images"
IMAGES_MAX_COUNT = 3

# field -> (policy name, max count)
BUNDLE_FIELDS: Dict[str, tuple] = {
    "profilepic": ("avatar", 1),
    "gallery": ("image", 5),
    "documents": ("document", 3),
}


def request_limits(config: AppConfig) -> Dict[str, int]:
    """Hard body ceilings per route: file bytes the route may take plus multipart overhead."""
    policy = config.policy
    file_bytes = {
        "/image": policy("image").max_bytes,
        "/profile": policy("avatar").max_bytes,
        "/document": policy("document").max_bytes,
        "/images": policy("image").max_bytes * IMAGES_MAX_COUNT,
        "/bundle": sum(policy(name).max_bytes * count for name, count in BUNDLE_FIELDS.values()),
    }
    overhead = config.server.multipart_overhead_bytes
    return {f"{PREFIX}{path}": size + overhead for path, size in file_bytes.items()}


def _orchestrator(request: Request) -> UploadOrchestrator:
    return request.app.state.orchestrator


def _config(request: Request) -> AppConfig:
    return request.app.state.config


def _error_response(outcome: FileOutcome) -> JSONResponse:
    return JSONResponse(
        outcome.error.model_dump(exclude_none=True), status_code=outcome.status_code
    )


async def _upload_single(request: Request, field: str, policy_name: str, message: str):
    policy = _config(request).policy(policy_name)
    async with opened_upload_form(request) as form:
        outcome = await _orchestrator(request).process_single(form, field, policy)

    if not outcome.ok:
        return _error_response(outcome)
    return SingleUploadResponse(message=message, file=outcome.file, fields=form.fields)


@router.post("/image", response_model=SingleUploadResponse)
async def upload_image(request: Request):
    """Upload one image (field ``image``) to the ``image`` policy's folder.

    Raises:
        NoFilePresent (400): No file under ``image``.
    """
    return await _upload_single(request, "image", "image", "Image uploaded successfully")


@router.post("/document", response_model=SingleUploadResponse)
async def upload_document(request: Request):
    """Upload one document (field ``document``): pdf, doc, docx or txt."""
    return await _upload_single(request, "document", "document", "Document uploaded successfully")


@router.post("/profile", response_model=ProfileUploadResponse)
async def upload_profile(request: Request):
    """Upload a profile image (field ``avatar``).

    The remote key is fixed per user (``profile_{userId}``) and overwritten
    on every upload, so the latest avatar always lives at the same id.
    """
    policy = _config(request).policy("avatar")
    async with opened_upload_form(request) as form:
        username = form.fields.get("username")
        user_id = form.fields.get("userId")
        if not username or not user_id:
            logger.warning("[uploads/router] Profile upload without username/userId")

        outcome = await _orchestrator(request).process_single(
            form, "avatar", policy, public_id=fixed_public_id(policy, owner=user_id)
        )

    if not outcome.ok:
        return _error_response(outcome)
    return ProfileUploadResponse(
        message="Profile image uploaded successfully",
        user=ProfileUser(
            username=username,
            userId=user_id,
            avatar=AvatarRef(url=outcome.file.url, publicId=outcome.file.public_id),
        ),
        file=outcome.file,
    )


@router.post("/images", response_model=BatchUploadResponse)
async def upload_images(request: Request):
    """Upload up to three images under ``images``; one outcome per file, in order."""
    policy = _config(request).policy("image")
    async with opened_upload_form(request) as form:
        outcomes = await _orchestrator(request).process_array(
            form, IMAGES_FIELD, policy, IMAGES_MAX_COUNT
        )

    uploaded = sum(1 for outcome in outcomes if outcome.ok)
    body = BatchUploadResponse(
        message=f"{uploaded} of {len(outcomes)} files uploaded successfully",
        files=outcomes,
    )
    return JSONResponse(body.model_dump(mode="json"), status_code=response_status(outcomes))


@router.post("/bundle", response_model=FieldsUploadResponse)
async def upload_bundle(request: Request):
    """Upload a profile picture, gallery images and documents in one request."""
    config = _config(request)
    rules = {
        field: FieldRule(policy=config.policy(policy_name), max_count=count)
        for field, (policy_name, count) in BUNDLE_FIELDS.items()
    }
    async with opened_upload_form(request) as form:
        results = await _orchestrator(request).process_fields(form, rules)

    outcomes: List[FileOutcome] = [o for field_outcomes in results.values() for o in field_outcomes]
    uploaded = sum(1 for outcome in outcomes if outcome.ok)
    body = FieldsUploadResponse(
        message=f"{uploaded} of {len(outcomes)} files uploaded successfully",
        uploaded_files=results,
    )
    return JSONResponse(body.model_dump(mode="json"), status_code=response_status(outcomes))


@router.delete("/{public_id:path}", response_model=RemoteDeleteResponse)
async def delete_remote(
    request: Request,
    public_id: str,
    resource_type: ResourceType = Query(ResourceType.IMAGE),
):
    """Delete a stored object from remote storage.

    Returns 404 when the remote store reports the object does not exist.
    """
    deleted = await _orchestrator(request).transferer.delete(public_id, resource_type)
    if not deleted:
        return JSONResponse(
            {"error": f"Remote object not found: {public_id}", "reason": "not_found"},
            status_code=404,
        )
    return RemoteDeleteResponse(public_id=public_id, deleted=True)


async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    """Render request-level upload errors as ``{"error", "reason", ...}``."""
    logger.info("[uploads/router] %s %s -> %s", request.method, request.url.path, exc.reason)
    return JSONResponse(exc.to_body().model_dump(exclude_none=True), status_code=exc.status_code)
