"""Ingestion orchestration for upload requests.

One file runs through: validate → stage → transfer → cleanup. Cleanup runs
in a ``finally`` block, so the staged copy is deleted exactly once whatever
the transfer did.

Requests come in three shapes:

* single      — exactly one file under one field
* array       — up to ``max_count`` files under one field
* multi-field — a fixed mapping field → (policy, max_count)

Files in a request are processed sequentially in submission order, and
every file gets its own outcome: a rejected or failed file never stops its
siblings from being processed. Any unexpected error once a file is staged
becomes that file's ``TransferFailed`` outcome. Request-level problems (no
file at all, an unexpected field, too many files) are raised before any file
is touched.
"""
import logging
import re
import time
from typing import Dict, List, Mapping, Optional

from .cleanup import CleanupCoordinator, DeleteFailed
from .errors import (
    NoFilePresent,
    StageFailed,
    TooManyFiles,
    TransferFailed,
    UnexpectedField,
    UploadError,
    ValidationRejected,
)
from .schemas import (
    FieldRule,
    FileOutcome,
    IncomingFile,
    OutcomeStatus,
    RemoteDescriptor,
    RemoteOptions,
    StagedFile,
    UploadedFile,
    UploadPolicy,
)
from .stager import LocalStager
from .transfer import RemoteTransferer
from .transport import UploadForm
from .validator import Reject, validate

logger = logging.getLogger(__name__)

_PUBLIC_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def fixed_public_id(policy: UploadPolicy, owner: Optional[str] = None) -> Optional[str]:
    """Remote key for policies that overwrite by convention.

    ``profile_`` + ``"42"`` → ``"profile_42"``; without an owner the current
    time in milliseconds is used instead.
    """
    if not policy.public_id_prefix:
        return None
    suffix = _PUBLIC_ID_UNSAFE.sub("_", owner).strip("_") if owner else ""
    return f"{policy.public_id_prefix}{suffix or int(time.time() * 1000)}"


def response_status(outcomes: List[FileOutcome]) -> int:
    """HTTP status for a batch: 200 all ok, 207 mixed, else the worst error."""
    if all(outcome.ok for outcome in outcomes):
        return 200
    if any(outcome.ok for outcome in outcomes):
        return 207
    return max(outcome.status_code for outcome in outcomes)


class UploadOrchestrator:
    """Runs the staged upload pipeline for whole requests.

    Args:
        stager: Local staging writer.
        transferer: Remote upload step.
        cleanup: Staged-file deleter.
        max_retries: Extra transfer attempts per file before giving up.
    """

    def __init__(
        self,
        stager: LocalStager,
        transferer: RemoteTransferer,
        cleanup: CleanupCoordinator,
        max_retries: int = 0,
    ) -> None:
        self._stager = stager
        self._transferer = transferer
        self._cleanup = cleanup
        self._max_retries = max_retries

    @property
    def transferer(self) -> RemoteTransferer:
        return self._transferer

    # -----------------------------------------------------------------------
    # Request shapes
    # -----------------------------------------------------------------------

    async def process_single(
        self,
        form: UploadForm,
        field: str,
        policy: UploadPolicy,
        public_id: Optional[str] = None,
    ) -> FileOutcome:
        """Process exactly one file under *field*.

        Raises:
            UnexpectedField: A file arrived under another field.
            NoFilePresent: No file under *field*.
            TooManyFiles: More than one file under *field*.
        """
        self._check_fields(form, [field])
        files = form.files_for(field)
        if not files:
            raise NoFilePresent(f"No file uploaded under field '{field}'")
        if len(files) > 1:
            raise TooManyFiles(field, 1, len(files))
        return await self.process_file(files[0], policy, public_id=public_id)

    async def process_array(
        self,
        form: UploadForm,
        field: str,
        policy: UploadPolicy,
        max_count: int,
    ) -> List[FileOutcome]:
        """Process up to *max_count* files under *field*, one outcome each, in order."""
        self._check_fields(form, [field])
        files = form.files_for(field)
        if not files:
            raise NoFilePresent(f"No files uploaded under field '{field}'")
        if len(files) > max_count:
            raise TooManyFiles(field, max_count, len(files))

        return [
            await self.process_file(incoming, policy, index=index)
            for index, incoming in enumerate(files)
        ]

    async def process_fields(
        self,
        form: UploadForm,
        rules: Mapping[str, FieldRule],
    ) -> Dict[str, List[FileOutcome]]:
        """Process several fields, each under its own policy and count limit.

        The result holds one entry per field that carried files, in the
        order of *rules*.
        """
        self._check_fields(form, list(rules))
        if form.file_count == 0:
            raise NoFilePresent("No files uploaded")
        for field, rule in rules.items():
            count = len(form.files_for(field))
            if count > rule.max_count:
                raise TooManyFiles(field, rule.max_count, count)

        results: Dict[str, List[FileOutcome]] = {}
        for field, rule in rules.items():
            files = form.files_for(field)
            if not files:
                continue
            results[field] = [
                await self.process_file(incoming, rule.policy, index=index)
                for index, incoming in enumerate(files)
            ]
        return results

    # -----------------------------------------------------------------------
    # Single-file pipeline
    # -----------------------------------------------------------------------

    async def process_file(
        self,
        incoming: IncomingFile,
        policy: UploadPolicy,
        index: int = 0,
        public_id: Optional[str] = None,
    ) -> FileOutcome:
        """Run one file through validate → stage → transfer → cleanup."""
        verdict = validate(incoming.content_type, incoming.filename, incoming.size, policy)
        if isinstance(verdict, Reject):
            logger.info(
                "[uploads/orchestrator] Rejected %r (%s): %s",
                incoming.filename, verdict.attribute, verdict.reason,
            )
            error = ValidationRejected(verdict.attribute, verdict.reason)
            return self._failure(incoming, index, OutcomeStatus.REJECTED, error)

        try:
            staged = await self._stager.stage(
                incoming, policy.staging_subdir, max_bytes=policy.max_bytes
            )
        except StageFailed as exc:
            logger.error("[uploads/orchestrator] Staging %r failed: %s", incoming.filename, exc.cause)
            return self._failure(incoming, index, OutcomeStatus.FAILED, exc)

        options = RemoteOptions.for_policy(
            policy,
            public_id=public_id or fixed_public_id(policy),
            content_type=incoming.content_type,
        )

        uploaded: Optional[UploadedFile] = None
        transfer_error: Optional[TransferFailed] = None
        try:
            descriptor = await self._transfer(staged, options)
            uploaded = UploadedFile.from_descriptor(
                descriptor, incoming.filename, staged.size_bytes
            )
        except TransferFailed as exc:
            transfer_error = exc
        except Exception as exc:
            logger.exception(
                "[uploads/orchestrator] Unexpected error transferring %s", staged.stored_name
            )
            transfer_error = TransferFailed(f"{self._transferer.store.name}: {exc}")
        finally:
            cleanup_result = await self._cleanup.cleanup(staged)

        if transfer_error is not None:
            if isinstance(cleanup_result, DeleteFailed):
                transfer_error = transfer_error.with_cleanup_error(cleanup_result.as_error())
            return self._failure(incoming, index, OutcomeStatus.FAILED, transfer_error)

        return FileOutcome(
            index=index,
            field=incoming.field_name,
            original_name=incoming.filename,
            status=OutcomeStatus.UPLOADED,
            file=uploaded,
        )

    async def _transfer(self, staged: StagedFile, options: RemoteOptions) -> RemoteDescriptor:
        attempt = 1
        while True:
            try:
                return await self._transferer.transfer(staged, options)
            except TransferFailed as exc:
                if attempt > self._max_retries:
                    raise
                logger.warning(
                    "[uploads/orchestrator] Transfer attempt %d for %s failed, retrying: %s",
                    attempt, staged.stored_name, exc.provider_detail,
                )
                attempt += 1

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _check_fields(form: UploadForm, allowed: List[str]) -> None:
        for field in form.files:
            if field not in allowed:
                raise UnexpectedField(field)

    @staticmethod
    def _failure(
        incoming: IncomingFile,
        index: int,
        status: OutcomeStatus,
        error: UploadError,
    ) -> FileOutcome:
        return FileOutcome(
            index=index,
            field=incoming.field_name,
            original_name=incoming.filename,
            status=status,
            error=error.to_body(),
            status_code=error.status_code,
        )
