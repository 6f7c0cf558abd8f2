"""Shared test fixtures and configuration for backend tests."""
import io
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from fastapi.testclient import TestClient

from upload_relay.config import AppConfig, ServerSettings, StagingSettings
from upload_relay.main import create_app
from upload_relay.remote.provider import RemoteStore
from upload_relay.uploads.cleanup import CleanupCoordinator
from upload_relay.uploads.orchestrator import UploadOrchestrator
from upload_relay.uploads.schemas import (
    IncomingFile,
    RemoteDescriptor,
    RemoteOptions,
    ResourceType,
)
from upload_relay.uploads.stager import LocalStager
from upload_relay.uploads.transfer import RemoteTransferer


class BytesStream:
    """Async byte source; optionally dies after ``fail_after`` bytes."""

    def __init__(self, data: bytes, fail_after: Optional[int] = None) -> None:
        self._buffer = io.BytesIO(data)
        self._fail_after = fail_after
        self._read = 0

    async def read(self, size: int = -1) -> bytes:
        chunk = self._buffer.read(size)
        self._read += len(chunk)
        if self._fail_after is not None and self._read > self._fail_after:
            raise ConnectionResetError("client went away")
        return chunk


class FakeRemoteStore(RemoteStore):
    """In-memory remote store that records every call.

    Set ``fail_with`` to make uploads raise; ``fail_times`` limits how many
    calls fail before uploads start succeeding. ``reported_bytes`` overrides
    the stored size, as a transforming store would report it.
    """

    def __init__(self) -> None:
        self.uploads: List[tuple] = []
        self.objects: dict = {}
        self.fail_with: Optional[Exception] = None
        self.fail_times: Optional[int] = None
        self.reported_bytes: Optional[object] = None

    @property
    def name(self) -> str:
        return "fake"

    def upload(self, local_path: Path, options: RemoteOptions) -> RemoteDescriptor:
        # The staged file must still be on disk while the transfer runs.
        assert local_path.exists()
        data = local_path.read_bytes()
        self.uploads.append((local_path, options, data))

        if self.fail_with is not None:
            if self.fail_times is None or self.fail_times > 0:
                if self.fail_times is not None:
                    self.fail_times -= 1
                raise self.fail_with

        ext = local_path.suffix.lstrip(".").lower()
        public_id = f"{options.folder}/{options.public_id or local_path.stem}"
        self.objects[public_id] = data
        return RemoteDescriptor(
            public_id=public_id,
            url=f"https://cdn.example.test/{public_id}.{ext}",
            format=ext,
            width=800,
            height=600,
            bytes=len(data) if self.reported_bytes is None else self.reported_bytes,
            resource_type=options.resource_type.value,
        )

    def delete(self, public_id: str, resource_type: ResourceType = ResourceType.IMAGE) -> bool:
        return self.objects.pop(public_id, None) is not None


@pytest.fixture
def staging_root(tmp_path) -> Path:
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def staged_files(staging_root) -> Callable[[], List[Path]]:
    """Lists every regular file under the staging root."""
    return lambda: sorted(p for p in staging_root.rglob("*") if p.is_file())


@pytest.fixture
def fake_store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def make_incoming() -> Callable[..., IncomingFile]:
    """Factory for IncomingFile objects backed by in-memory bytes."""

    def _make(
        data: bytes = b"x" * 2048,
        filename: str = "photo.JPG",
        content_type: str = "image/jpeg",
        field_name: str = "image",
        size: Optional[int] = -1,
        fail_after: Optional[int] = None,
    ) -> IncomingFile:
        return IncomingFile(
            field_name=field_name,
            filename=filename,
            content_type=content_type,
            size=len(data) if size == -1 else size,
            stream=BytesStream(data, fail_after=fail_after),
        )

    return _make


@pytest.fixture
def cleanup() -> CleanupCoordinator:
    return CleanupCoordinator()


@pytest.fixture
def orchestrator(staging_root, fake_store, cleanup) -> UploadOrchestrator:
    return UploadOrchestrator(
        stager=LocalStager(str(staging_root), chunk_size=512),
        transferer=RemoteTransferer(fake_store),
        cleanup=cleanup,
    )


@pytest.fixture
def app_config(staging_root) -> AppConfig:
    return AppConfig(
        staging=StagingSettings(root_dir=str(staging_root)),
        server=ServerSettings(multipart_overhead_bytes=4096),
    )


@pytest.fixture
def api_client(app_config, fake_store):
    """TestClient for an app wired to the fake remote store, lifespan included."""
    with TestClient(create_app(app_config, remote_store=fake_store)) as client:
        yield client
