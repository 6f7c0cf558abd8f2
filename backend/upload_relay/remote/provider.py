"""Abstract RemoteStore interface.

Every storage back-end (Cloudinary, S3, …) implements this interface. Calls
are blocking; the transfer layer runs them in an executor.
"""
from abc import ABC, abstractmethod
from pathlib import Path

from ..uploads.schemas import RemoteDescriptor, RemoteOptions, ResourceType


class RemoteStore(ABC):
    """Abstract base class for remote object stores.

    Implementations must be thread-safe: uploads for concurrent requests
    run in parallel executor threads against one shared instance.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short provider name used in logs and error details."""

    @abstractmethod
    def upload(self, local_path: Path, options: RemoteOptions) -> RemoteDescriptor:
        """Upload a local file in a single call.

        Args:
            local_path: Complete staged file.
            options: Folder, optional fixed key, resource type, transformation.

        Returns:
            Descriptor of the stored object.

        Raises:
            Exception: On provider error (auth, quota, network, rejected file, …).
        """

    @abstractmethod
    def delete(self, public_id: str, resource_type: ResourceType = ResourceType.IMAGE) -> bool:
        """Delete a stored object.

        Returns:
            ``True`` if the provider reports the object was removed,
            ``False`` if it did not exist.
        """
