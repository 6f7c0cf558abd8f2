"""Cloudinary remote store.

Uses ``cloudinary.uploader.upload`` with the policy's folder and incoming
transformation list, e.g.::

    [
        {"width": 800, "height": 800, "crop": "limit"},
        {"quality": "auto"},
        {"fetch_format": "auto"},
    ]

Cloudinary applies the transformation before storing, so the descriptor's
format, dimensions and byte size describe the stored asset, not the
client's original file.

Upload response fields used
---------------------------
``public_id``, ``secure_url`` (falls back to ``url``), ``format``,
``width``, ``height``, ``bytes``, ``resource_type``. The full response is
kept as descriptor metadata.
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import cloudinary
import cloudinary.uploader

from ..uploads.schemas import RemoteDescriptor, RemoteOptions, ResourceType
from .provider import RemoteStore

logger = logging.getLogger(__name__)


def descriptor_from_result(result: Dict[str, Any]) -> RemoteDescriptor:
    """Map a Cloudinary upload response onto a RemoteDescriptor."""
    url = result.get("secure_url") or result.get("url")
    if not result.get("public_id") or not url:
        raise ValueError(
            f"Unexpected Cloudinary response, missing public_id/url: {sorted(result)}"
        )
    return RemoteDescriptor(
        public_id=result["public_id"],
        url=url,
        format=result.get("format"),
        width=result.get("width"),
        height=result.get("height"),
        bytes=int(result.get("bytes") or 0),
        resource_type=result.get("resource_type", ResourceType.IMAGE.value),
        metadata=dict(result),
    )


class CloudinaryRemoteStore(RemoteStore):
    """Remote store backed by Cloudinary's upload API.

    Args:
        cloud_name: Cloudinary cloud name.
        api_key:    API key.
        api_secret: API secret.
        timeout:    Per-call timeout in seconds, ``None`` for the SDK default.
    """

    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._timeout = timeout
        self._uploader: Optional[Any] = None

    @property
    def name(self) -> str:
        return "cloudinary"

    def _get_uploader(self) -> Any:
        """Configure the SDK once and return the uploader module."""
        if self._uploader is None:
            cloudinary.config(
                cloud_name=self._cloud_name,
                api_key=self._api_key,
                api_secret=self._api_secret,
                secure=True,
            )
            self._uploader = cloudinary.uploader
            logger.info("[remote/cloudinary] Configured for cloud %s", self._cloud_name)
        return self._uploader

    def upload(self, local_path: Path, options: RemoteOptions) -> RemoteDescriptor:
        uploader = self._get_uploader()

        kwargs: Dict[str, Any] = {
            "folder": options.folder,
            "resource_type": options.resource_type.value,
        }
        if options.public_id:
            kwargs["public_id"] = options.public_id
            kwargs["overwrite"] = options.overwrite
            if options.overwrite:
                kwargs["invalidate"] = True
        if options.transformation:
            kwargs["transformation"] = options.transformation
        if self._timeout:
            kwargs["timeout"] = self._timeout

        logger.debug(
            "[remote/cloudinary] uploading %s folder=%s public_id=%s",
            local_path.name, options.folder, options.public_id,
        )
        result = uploader.upload(str(local_path), **kwargs)
        return descriptor_from_result(result)

    def delete(self, public_id: str, resource_type: ResourceType = ResourceType.IMAGE) -> bool:
        uploader = self._get_uploader()
        result = uploader.destroy(
            public_id, resource_type=resource_type.value, invalidate=True
        )
        outcome = result.get("result")
        if outcome == "ok":
            return True
        if outcome == "not found":
            return False
        raise ValueError(f"Unexpected Cloudinary destroy result for {public_id}: {outcome!r}")
