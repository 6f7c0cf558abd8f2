"""Remote transfer step of the upload pipeline.

Hands a staged file to the configured RemoteStore in one call. The store's
SDK is blocking, so the call runs in the default executor. No retries happen
here; the orchestrator owns the retry policy.
"""
import asyncio
import logging

from ..remote.provider import RemoteStore
from .errors import TransferFailed
from .schemas import RemoteDescriptor, RemoteOptions, ResourceType, StagedFile

logger = logging.getLogger(__name__)


class RemoteTransferer:
    """Pushes staged files to remote storage.

    Args:
        store: Long-lived remote store shared by all requests.
    """

    def __init__(self, store: RemoteStore) -> None:
        self._store = store

    @property
    def store(self) -> RemoteStore:
        return self._store

    async def transfer(self, staged: StagedFile, options: RemoteOptions) -> RemoteDescriptor:
        """Upload *staged* under *options*.

        Returns:
            RemoteDescriptor for the stored object.

        Raises:
            TransferFailed: On any provider error; the provider's message is
                kept as ``provider_detail``.
        """
        loop = asyncio.get_event_loop()
        try:
            descriptor = await loop.run_in_executor(
                None, lambda: self._store.upload(staged.path, options)
            )
        except Exception as exc:
            detail = f"{self._store.name}: {exc}"
            logger.error(
                "[uploads/transfer] Upload of %s to %s failed: %s",
                staged.stored_name, options.folder, exc,
            )
            raise TransferFailed(detail) from exc

        logger.info(
            "[uploads/transfer] Uploaded %s as %s (%d bytes)",
            staged.stored_name, descriptor.public_id, descriptor.bytes,
        )
        return descriptor

    async def delete(self, public_id: str, resource_type: ResourceType = ResourceType.IMAGE) -> bool:
        """Delete a remote object.

        Raises:
            TransferFailed: On provider error.
        """
        loop = asyncio.get_event_loop()
        try:
            deleted = await loop.run_in_executor(
                None, lambda: self._store.delete(public_id, resource_type)
            )
        except Exception as exc:
            logger.error("[uploads/transfer] Delete of %s failed: %s", public_id, exc)
            raise TransferFailed(f"{self._store.name}: {exc}") from exc

        logger.info("[uploads/transfer] Remote delete %s -> %s", public_id, deleted)
        return deleted
