"""AWS S3 remote store.

Objects are written to ``s3://{bucket}/{folder}/{key}`` where ``key`` is the
fixed public id (plus the staged file's extension) when one is given, and the
staged file name otherwise.

S3 does not transform content. The policy's transformation list is stored
as ``x-amz-meta-transformation`` JSON so a downstream image service can
apply it; format is the file extension and dimensions are unknown.
"""
import json
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from ..uploads.schemas import RemoteDescriptor, RemoteOptions, ResourceType
from .provider import RemoteStore

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"


class S3RemoteStore(RemoteStore):
    """Remote store backed by an S3 bucket.

    Args:
        bucket:                Target bucket.
        region_name:           AWS region. Defaults to ``us-east-1``.
        aws_access_key_id:     AWS access key. ``None`` → default credential chain.
        aws_secret_access_key: AWS secret access key.
        aws_session_token:     Optional temporary-credential session token.
        public_base_url:       Base URL for object links (CDN); regional URL otherwise.
        endpoint_url:          Custom endpoint (MinIO, LocalStack).
        timeout:               Connect/read timeout in seconds.
    """

    def __init__(
        self,
        bucket: str,
        region_name: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
        public_base_url: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._bucket = bucket
        self._region = region_name or DEFAULT_REGION
        self._access_key = aws_access_key_id
        self._secret_key = aws_secret_access_key
        self._session_token = aws_session_token
        self._public_base_url = public_base_url
        self._endpoint_url = endpoint_url
        self._timeout = timeout
        self._client: Optional[object] = None

    @property
    def name(self) -> str:
        return "s3"

    def _get_client(self) -> object:
        """Return a cached boto3 S3 client."""
        if self._client is None:
            try:
                import boto3  # imported lazily so tests can run with a mocked client
                from botocore.config import Config
            except ImportError as exc:
                raise ImportError(
                    "boto3 is required for S3RemoteStore. "
                    "Install it with: pip install boto3"
                ) from exc

            # Single attempt per call: transfer retries are decided by the orchestrator.
            config_kwargs: dict = {"retries": {"total_max_attempts": 1, "mode": "standard"}}
            if self._timeout:
                config_kwargs["connect_timeout"] = self._timeout
                config_kwargs["read_timeout"] = self._timeout

            kwargs: dict = {"region_name": self._region, "config": Config(**config_kwargs)}
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"] = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            if self._session_token:
                kwargs["aws_session_token"] = self._session_token
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url

            self._client = boto3.client("s3", **kwargs)

        return self._client

    def object_key(self, local_path: Path, options: RemoteOptions) -> str:
        name = f"{options.public_id}{local_path.suffix}" if options.public_id else local_path.name
        folder = options.folder.strip("/")
        return f"{folder}/{name}" if folder else name

    def object_url(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url.rstrip('/')}/{quote(key)}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{quote(key)}"

    def upload(self, local_path: Path, options: RemoteOptions) -> RemoteDescriptor:
        client = self._get_client()
        key = self.object_key(local_path, options)

        extra_args: dict = {"Metadata": {"resource-type": options.resource_type.value}}
        if options.content_type:
            extra_args["ContentType"] = options.content_type
        if options.transformation:
            extra_args["Metadata"]["transformation"] = json.dumps(
                options.transformation, separators=(",", ":")
            )

        logger.debug("[remote/s3] uploading %s to s3://%s/%s", local_path.name, self._bucket, key)
        client.upload_file(str(local_path), self._bucket, key, ExtraArgs=extra_args)
        head = client.head_object(Bucket=self._bucket, Key=key)

        return RemoteDescriptor(
            public_id=key,
            url=self.object_url(key),
            format=local_path.suffix.lstrip(".").lower() or None,
            width=None,
            height=None,
            bytes=int(head.get("ContentLength", 0)),
            resource_type=options.resource_type.value,
            metadata={"bucket": self._bucket, "etag": head.get("ETag")},
        )

    def delete(self, public_id: str, resource_type: ResourceType = ResourceType.IMAGE) -> bool:
        from botocore.exceptions import ClientError

        client = self._get_client()
        try:
            client.head_object(Bucket=self._bucket, Key=public_id)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        client.delete_object(Bucket=self._bucket, Key=public_id)
        return True
