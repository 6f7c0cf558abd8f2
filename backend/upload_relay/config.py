"""Upload relay configuration.

Loads settings from two YAML files:
  * relay.settings.yaml  — non-secret configuration (server, staging,
    remote provider, upload policies)
  * relay.secrets.yaml   — provider credentials (never committed)

Paths can be overridden with ``RELAY_SETTINGS_PATH`` / ``RELAY_SECRETS_PATH``.
Cloudinary credentials fall back to the ``CLOUDINARY_CLOUD_NAME``,
``CLOUDINARY_API_KEY`` and ``CLOUDINARY_API_SECRET`` environment variables.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .uploads.schemas import (
    DOCUMENT_EXTENSIONS,
    DOCUMENT_MIME_TYPES,
    IMAGE_EXTENSIONS,
    IMAGE_MIME_TYPES,
    MB,
    ResourceType,
    UploadPolicy,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")

_AUTO_FORMAT = [{"quality": "auto"}, {"fetch_format": "auto"}]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def default_policies() -> Dict[str, UploadPolicy]:
    """Built-in upload categories; entries in the settings file replace them by name."""
    return {
        "image": UploadPolicy(
            name="image",
            allowed_extensions=IMAGE_EXTENSIONS,
            allowed_mime_types=IMAGE_MIME_TYPES,
            max_bytes=5 * MB,
            folder="user-uploads",
            transformation=[{"width": 800, "height": 800, "crop": "limit"}, *_AUTO_FORMAT],
        ),
        "avatar": UploadPolicy(
            name="avatar",
            allowed_extensions=IMAGE_EXTENSIONS,
            allowed_mime_types=IMAGE_MIME_TYPES,
            max_bytes=5 * MB,
            folder="user-profiles",
            staging_subdir="profiles",
            transformation=[
                {"width": 400, "height": 400, "crop": "fill", "gravity": "face"},
                *_AUTO_FORMAT,
            ],
            public_id_prefix="profile_",
            overwrite=True,
        ),
        "document": UploadPolicy(
            name="document",
            allowed_extensions=DOCUMENT_EXTENSIONS,
            allowed_mime_types=DOCUMENT_MIME_TYPES,
            max_bytes=10 * MB,
            folder="user-documents",
            staging_subdir="documents",
            resource_type=ResourceType.RAW,
        ),
    }


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class CloudinarySecrets(BaseModel):
    cloud_name: Optional[str] = None
    api_key:    Optional[str] = None
    api_secret: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)


class AwsSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token:     Optional[str] = None


class Secrets(BaseModel):
    cloudinary: CloudinarySecrets = Field(default_factory=CloudinarySecrets)
    aws:        AwsSecrets        = Field(default_factory=AwsSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    # Allowance for multipart boundaries, part headers and text fields,
    # added on top of the file bytes a route may receive.
    multipart_overhead_bytes: int = Field(64 * 1024, ge=0)


class LoggingSettings(BaseModel):
    level: str = "info"


class StagingSettings(BaseModel):
    root_dir:   str = "uploads"
    chunk_size: int = Field(64 * 1024, gt=0)


class S3Settings(BaseModel):
    bucket:          Optional[str] = None
    region:          str           = "us-east-1"
    public_base_url: Optional[str] = None
    endpoint_url:    Optional[str] = None


class RemoteSettings(BaseModel):
    provider:        Literal["cloudinary", "s3"] = "cloudinary"
    timeout_seconds: Optional[float]             = Field(60.0, gt=0)
    max_retries:     int                         = Field(0, ge=0)
    s3:              S3Settings                  = Field(default_factory=S3Settings)


class AppConfig(BaseModel):
    server:   ServerSettings          = Field(default_factory=ServerSettings)
    logging:  LoggingSettings         = Field(default_factory=LoggingSettings)
    staging:  StagingSettings         = Field(default_factory=StagingSettings)
    remote:   RemoteSettings          = Field(default_factory=RemoteSettings)
    policies: Dict[str, UploadPolicy] = Field(default_factory=default_policies)
    secrets:  Secrets                 = Field(default_factory=Secrets)

    @field_validator("policies", mode="before")
    @classmethod
    def _merge_policies(cls, value: Any) -> Any:
        """Overlay configured policies onto the defaults, keyed by name."""
        if not isinstance(value, dict):
            return value
        merged: Dict[str, Any] = {
            name: policy.model_dump() for name, policy in default_policies().items()
        }
        for name, raw in value.items():
            if isinstance(raw, UploadPolicy):
                merged[name] = raw
                continue
            base = merged.get(name, {})
            merged[name] = {**base, **(raw or {}), "name": name}
        return merged

    def policy(self, name: str) -> UploadPolicy:
        try:
            return self.policies[name]
        except KeyError:
            raise KeyError(f"Unknown upload policy: {name}") from None


# ---------------------------------------------------------------------------
# Environment fallbacks
# ---------------------------------------------------------------------------


def _apply_env_fallbacks(secrets_data: Dict[str, Any]) -> Dict[str, Any]:
    """Fill missing Cloudinary credentials from the environment."""
    cloudinary = dict(secrets_data.get("cloudinary") or {})
    for key, env_var in (
        ("cloud_name", "CLOUDINARY_CLOUD_NAME"),
        ("api_key",    "CLOUDINARY_API_KEY"),
        ("api_secret", "CLOUDINARY_API_SECRET"),
    ):
        if not cloudinary.get(key) and os.environ.get(env_var):
            cloudinary[key] = os.environ[env_var]
    return {**secrets_data, "cloudinary": cloudinary}


def _resolve_root_dir(root_dir: str, settings_path: Path) -> str:
    """Relative staging roots resolve from the settings file's directory."""
    path = Path(root_dir).expanduser()
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path or os.environ.get("RELAY_SETTINGS_PATH") or SETTINGS_FILE)
    secrets_path = Path(secrets_path or os.environ.get("RELAY_SECRETS_PATH") or SECRETS_FILE)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _apply_env_fallbacks(_load_yaml(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    config.staging.root_dir = _resolve_root_dir(config.staging.root_dir, settings_path)

    logger.info(
        "Config loaded (staging=%s, remote=%s, policies=%s)",
        config.staging.root_dir,
        config.remote.provider,
        ", ".join(sorted(config.policies)),
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (for testing)."""
    global _config
    _config = None
