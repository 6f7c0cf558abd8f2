"""Remote object-storage providers.

The upload pipeline talks to remote storage only through ``RemoteStore`` so
the transfer step stays provider-agnostic. Cloudinary is the default
provider; S3 is available for deployments that keep files in a bucket.
"""
from .provider import RemoteStore
from .cloudinary_store import CloudinaryRemoteStore
from .s3_store import S3RemoteStore
from .factory import build_remote_store

__all__ = [
    "RemoteStore",
    "CloudinaryRemoteStore",
    "S3RemoteStore",
    "build_remote_store",
]
