"""Transport boundary between HTTP and the upload pipeline.

Two responsibilities:

* ``read_upload_form`` turns a parsed multipart request into an
  ``UploadForm``: files grouped by field name as ``IncomingFile`` objects,
  plus the plain-text fields.
* ``UploadSizeLimitMiddleware`` enforces a hard byte ceiling per route while
  the body is still streaming in. A declared ``Content-Length`` above the
  ceiling is refused before any byte is read; a body that crosses the ceiling
  mid-stream aborts the request by raising ``PayloadTooLarge`` from
  ``receive``. Either way nothing reaches the staging area.

Starlette's multipart parser buffers each file part in a
``SpooledTemporaryFile`` that rolls over to an anonymous temp file once the
part passes 1 MB. That happens before validation, so a rejected file may
briefly occupy the system temp directory (never the staging root). Routes
read the form through ``opened_upload_form``, which closes it on exit and so
releases those files. If the ceiling interrupts parsing, no form exists to
close; the parser's temp files are unlinked anonymous files and are released
when collected.
"""
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.datastructures import FormData, UploadFile
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .errors import PayloadTooLarge
from .schemas import IncomingFile

logger = logging.getLogger(__name__)

_BODY_METHODS = {"POST", "PUT", "PATCH"}


@dataclass
class UploadForm:
    """Files and text fields of one multipart request."""
    files: Dict[str, List[IncomingFile]] = field(default_factory=dict)
    fields: Dict[str, str] = field(default_factory=dict)
    _form: Optional[FormData] = None

    def files_for(self, field_name: str) -> List[IncomingFile]:
        return self.files.get(field_name, [])

    @property
    def file_count(self) -> int:
        return sum(len(files) for files in self.files.values())

    async def close(self) -> None:
        """Release the transport's spooled temporary files."""
        if self._form is not None:
            await self._form.close()


def incoming_from_upload(field_name: str, upload: UploadFile) -> IncomingFile:
    return IncomingFile(
        field_name=field_name,
        filename=upload.filename or "",
        content_type=upload.content_type or "application/octet-stream",
        size=upload.size,
        stream=upload,
    )


async def read_upload_form(request: Request, max_files: int = 100) -> UploadForm:
    """Parse the request body as multipart form data.

    File inputs submitted without a file (empty filename and no bytes) are
    treated as absent.
    """
    form = await request.form(max_files=max_files)
    files: Dict[str, List[IncomingFile]] = defaultdict(list)
    fields: Dict[str, str] = {}

    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if not value.filename and not value.size:
                continue
            files[key].append(incoming_from_upload(key, value))
        else:
            fields[key] = value

    logger.debug(
        "[uploads/transport] form parsed: files=%s fields=%s",
        {k: len(v) for k, v in files.items()}, sorted(fields),
    )
    return UploadForm(files=dict(files), fields=fields, _form=form)


@asynccontextmanager
async def opened_upload_form(request: Request, max_files: int = 100) -> AsyncIterator[UploadForm]:
    """Read the form and close it on exit, whether the block succeeds or raises.

    Usage::

        async with opened_upload_form(request) as form:
            outcome = await orchestrator.process_single(form, "image", policy)
    """
    form: Optional[UploadForm] = None
    try:
        form = await read_upload_form(request, max_files=max_files)
        yield form
    finally:
        if form is not None:
            await form.close()


class UploadSizeLimitMiddleware:
    """Pure ASGI middleware enforcing per-path request body ceilings.

    Args:
        app: Downstream ASGI application.
        limits: Path → ceiling in bytes. When omitted, the mapping is read
            per request from ``app.state.upload_limits`` so it can be filled
            in during the lifespan.
    """

    def __init__(self, app: ASGIApp, limits: Optional[Mapping[str, int]] = None) -> None:
        self.app = app
        self._limits = limits

    def _limit_for(self, scope: Scope) -> Optional[int]:
        limits = self._limits
        if limits is None:
            owner = scope.get("app")
            limits = getattr(getattr(owner, "state", None), "upload_limits", None) or {}
        return limits.get(scope.get("path", ""))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("method") not in _BODY_METHODS:
            await self.app(scope, receive, send)
            return

        limit = self._limit_for(scope)
        if limit is None:
            await self.app(scope, receive, send)
            return

        declared = _content_length(scope)
        if declared is not None and declared > limit:
            logger.warning(
                "[uploads/transport] Refusing %s: Content-Length %d exceeds %d",
                scope.get("path"), declared, limit,
            )
            error = PayloadTooLarge(limit)
            response = JSONResponse(
                error.to_body().model_dump(exclude_none=True), status_code=error.status_code
            )
            await response(scope, receive, send)
            return

        await self.app(scope, _limited_receive(receive, limit, scope.get("path", "")), send)


def _content_length(scope: Scope) -> Optional[int]:
    for name, value in scope.get("headers", []):
        if name == b"content-length":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def _limited_receive(receive: Receive, limit: int, path: str) -> Callable:
    received = 0

    async def limited() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > limit:
                logger.warning(
                    "[uploads/transport] Aborting %s: body crossed %d byte ceiling", path, limit
                )
                raise PayloadTooLarge(limit)
        return message

    return limited
