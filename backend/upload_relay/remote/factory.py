"""Builds the configured RemoteStore."""
import logging

from ..config import AppConfig
from .cloudinary_store import CloudinaryRemoteStore
from .provider import RemoteStore
from .s3_store import S3RemoteStore

logger = logging.getLogger(__name__)


def build_remote_store(config: AppConfig) -> RemoteStore:
    """Create the remote store selected by ``remote.provider``.

    Missing credentials are logged but not fatal: uploads will then fail
    with a TransferFailed carrying the provider's authentication error.

    Raises:
        ValueError: If the S3 provider is selected without a bucket.
    """
    remote = config.remote

    if remote.provider == "s3":
        if not remote.s3.bucket:
            raise ValueError("remote.s3.bucket must be set when remote.provider is 's3'")
        aws = config.secrets.aws
        store: RemoteStore = S3RemoteStore(
            bucket=remote.s3.bucket,
            region_name=remote.s3.region,
            aws_access_key_id=aws.access_key_id,
            aws_secret_access_key=aws.secret_access_key,
            aws_session_token=aws.session_token,
            public_base_url=remote.s3.public_base_url,
            endpoint_url=remote.s3.endpoint_url,
            timeout=remote.timeout_seconds,
        )
    else:
        creds = config.secrets.cloudinary
        if not creds.is_complete:
            logger.warning(
                "[remote] Cloudinary credentials incomplete; uploads will fail until "
                "cloud_name/api_key/api_secret are configured"
            )
        store = CloudinaryRemoteStore(
            cloud_name=creds.cloud_name,
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            timeout=remote.timeout_seconds,
        )

    logger.info("[remote] Using %s remote store", store.name)
    return store
