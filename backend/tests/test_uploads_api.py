"""Endpoint tests for /api/upload using FastAPI TestClient.

The remote store is the in-memory fake from conftest, so every request runs
the real validate → stage → transfer → cleanup pipeline against tmp_path.
"""
import pytest
from fastapi.testclient import TestClient

from upload_relay.config import AppConfig, ServerSettings, StagingSettings
from upload_relay.main import create_app
from upload_relay.uploads.transport import UploadForm

JPEG = b"\xff\xd8\xff\xe0" + b"x" * 2044
PNG = b"\x89PNG\r\n\x1a\n" + b"x" * 1016


def _image(name="photo.JPG", data=JPEG, content_type="image/jpeg"):
    return (name, data, content_type)


# ---------------------------------------------------------------------------
# Single-file routes
# ---------------------------------------------------------------------------


class TestUploadImage:
    def test_success(self, api_client: TestClient, fake_store, staged_files):
        resp = api_client.post(
            "/api/upload/image", files={"image": _image()}, data={"caption": "holiday"}
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Image uploaded successfully"
        assert body["file"]["original_name"] == "photo.JPG"
        assert body["file"]["bytes"] == 2048
        assert body["file"]["size"] == "2.00 KB"
        assert body["file"]["url"].startswith("https://cdn.example.test/user-uploads/")
        assert body["fields"] == {"caption": "holiday"}
        assert len(fake_store.uploads) == 1
        assert staged_files() == []

    def test_no_file(self, api_client: TestClient, fake_store):
        resp = api_client.post("/api/upload/image", data={"caption": "nothing attached"})

        assert resp.status_code == 400
        assert resp.json()["reason"] == "no_file_present"
        assert fake_store.uploads == []

    def test_disallowed_extension(self, api_client: TestClient, fake_store, staged_files):
        resp = api_client.post(
            "/api/upload/image",
            files={"image": ("malware.exe", b"MZ" + b"\x00" * 100, "application/x-msdownload")},
        )

        assert resp.status_code == 400
        body = resp.json()
        assert body["reason"] == "validation_rejected"
        assert body["attribute"] == "extension"
        assert ".exe" in body["error"]
        assert fake_store.uploads == []
        assert staged_files() == []

    def test_spoofed_mime_type(self, api_client: TestClient):
        resp = api_client.post(
            "/api/upload/image", files={"image": ("photo.jpg", JPEG, "application/pdf")}
        )

        assert resp.status_code == 400
        assert resp.json()["attribute"] == "mime_type"

    def test_transfer_failure(self, api_client: TestClient, fake_store, staged_files):
        fake_store.fail_with = ConnectionError("connection reset by peer")

        resp = api_client.post("/api/upload/image", files={"image": _image()})

        assert resp.status_code == 502
        body = resp.json()
        assert body == {
            "error": "Failed to upload file to remote storage",
            "reason": "transfer_failed",
            "details": "fake: connection reset by peer",
        }
        assert staged_files() == []

    def test_unexpected_field(self, api_client: TestClient, fake_store):
        resp = api_client.post("/api/upload/image", files={"photo": _image()})

        assert resp.status_code == 400
        assert resp.json()["reason"] == "unexpected_field"
        assert fake_store.uploads == []

    def test_two_files_under_single_field(self, api_client: TestClient, fake_store):
        resp = api_client.post(
            "/api/upload/image", files=[("image", _image()), ("image", _image("b.jpg"))]
        )

        assert resp.status_code == 400
        assert resp.json()["reason"] == "too_many_files"
        assert fake_store.uploads == []


class TestUploadDocument:
    def test_pdf_goes_to_documents_folder(self, api_client: TestClient, fake_store, staging_root):
        resp = api_client.post(
            "/api/upload/document",
            files={"document": ("cv.pdf", b"%PDF-1.4" + b"x" * 500, "application/pdf")},
        )

        assert resp.status_code == 200
        assert resp.json()["file"]["resource_type"] == "raw"
        local_path, options, _ = fake_store.uploads[0]
        assert options.folder == "user-documents"
        assert local_path.parent == (staging_root / "documents").resolve()
        assert not local_path.exists()

    def test_image_rejected_as_document(self, api_client: TestClient):
        resp = api_client.post("/api/upload/document", files={"document": _image()})

        assert resp.status_code == 400
        assert resp.json()["attribute"] == "extension"


class TestUploadProfile:
    def test_user_block_and_fixed_key(self, api_client: TestClient, fake_store):
        resp = api_client.post(
            "/api/upload/profile",
            files={"avatar": _image("me.png", PNG, "image/png")},
            data={"username": "jane", "userId": "42"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Profile image uploaded successfully"
        assert body["user"]["username"] == "jane"
        assert body["user"]["userId"] == "42"
        assert body["user"]["avatar"]["publicId"] == "user-profiles/profile_42"
        assert body["user"]["avatar"]["url"] == body["file"]["url"]

        _, options, _ = fake_store.uploads[0]
        assert options.public_id == "profile_42"
        assert options.overwrite is True

    def test_repeat_upload_keeps_key(self, api_client: TestClient, fake_store):
        for _ in range(2):
            api_client.post(
                "/api/upload/profile",
                files={"avatar": _image()},
                data={"username": "jane", "userId": "42"},
            )

        assert [u[1].public_id for u in fake_store.uploads] == ["profile_42", "profile_42"]

    def test_missing_user_fields_still_uploads(self, api_client: TestClient):
        resp = api_client.post("/api/upload/profile", files={"avatar": _image()})

        assert resp.status_code == 200
        assert resp.json()["user"]["userId"] is None


# ---------------------------------------------------------------------------
# Batch routes
# ---------------------------------------------------------------------------


class TestUploadImages:
    def test_all_succeed(self, api_client: TestClient, staged_files):
        resp = api_client.post(
            "/api/upload/images",
            files=[("images", _image("a.jpg")), ("images", _image("b.png", PNG, "image/png"))],
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "2 of 2 files uploaded successfully"
        assert [f["original_name"] for f in body["files"]] == ["a.jpg", "b.png"]
        assert "status_code" not in body["files"][0]
        assert staged_files() == []

    def test_mixed_results_are_multi_status(self, api_client: TestClient, fake_store):
        resp = api_client.post(
            "/api/upload/images",
            files=[
                ("images", _image("a.jpg")),
                ("images", ("b.exe", b"MZ", "application/x-msdownload")),
                ("images", _image("c.gif", b"GIF89a" + b"x" * 10, "image/gif")),
            ],
        )

        assert resp.status_code == 207
        files = resp.json()["files"]
        assert [f["status"] for f in files] == ["uploaded", "rejected", "uploaded"]
        assert files[1]["error"]["attribute"] == "extension"
        assert files[1]["file"] is None
        assert len(fake_store.uploads) == 2

    def test_all_rejected(self, api_client: TestClient):
        resp = api_client.post(
            "/api/upload/images",
            files=[("images", ("a.exe", b"MZ", "application/x-msdownload"))],
        )

        assert resp.status_code == 400
        assert resp.json()["files"][0]["status"] == "rejected"

    def test_more_than_three(self, api_client: TestClient, fake_store):
        resp = api_client.post(
            "/api/upload/images",
            files=[("images", _image(f"{i}.jpg")) for i in range(4)],
        )

        assert resp.status_code == 400
        assert resp.json()["reason"] == "too_many_files"
        assert fake_store.uploads == []


class TestUploadBundle:
    def test_structure_mirrors_fields(self, api_client: TestClient, fake_store, staged_files):
        resp = api_client.post(
            "/api/upload/bundle",
            files=[
                ("profilepic", _image("me.png", PNG, "image/png")),
                ("gallery", _image("g1.jpg")),
                ("gallery", _image("g2.jpg")),
                ("documents", ("cv.pdf", b"%PDF-1.4", "application/pdf")),
            ],
        )

        assert resp.status_code == 200
        uploaded = resp.json()["uploaded_files"]
        assert list(uploaded) == ["profilepic", "gallery", "documents"]
        assert len(uploaded["gallery"]) == 2
        assert uploaded["profilepic"][0]["file"]["public_id"].startswith("user-profiles/profile_")
        assert uploaded["documents"][0]["file"]["resource_type"] == "raw"
        assert len(fake_store.uploads) == 4
        assert staged_files() == []

    def test_omitted_fields_are_absent(self, api_client: TestClient):
        resp = api_client.post("/api/upload/bundle", files=[("gallery", _image())])

        assert resp.status_code == 200
        assert list(resp.json()["uploaded_files"]) == ["gallery"]

    def test_unknown_field(self, api_client: TestClient, fake_store):
        resp = api_client.post(
            "/api/upload/bundle", files=[("gallery", _image()), ("videos", _image("v.jpg"))]
        )

        assert resp.status_code == 400
        assert resp.json()["reason"] == "unexpected_field"
        assert fake_store.uploads == []


# ---------------------------------------------------------------------------
# Request ceiling
# ---------------------------------------------------------------------------


class TestRequestCeiling:
    @pytest.fixture
    def small_client(self, staging_root, fake_store):
        config = AppConfig(
            staging=StagingSettings(root_dir=str(staging_root)),
            server=ServerSettings(multipart_overhead_bytes=1024),
            policies={"image": {"max_bytes": 1024}},
        )
        with TestClient(create_app(config, remote_store=fake_store)) as client:
            yield client

    def test_body_over_ceiling_is_refused(self, small_client, fake_store, staged_files):
        resp = small_client.post(
            "/api/upload/image", files={"image": _image(data=b"x" * 8192)}
        )

        assert resp.status_code == 413
        assert resp.json()["reason"] == "payload_too_large"
        assert fake_store.uploads == []
        assert staged_files() == []

    def test_file_over_policy_under_ceiling(self, small_client, fake_store, staged_files):
        resp = small_client.post(
            "/api/upload/image", files={"image": _image(data=b"x" * 1500)}
        )

        assert resp.status_code == 413
        body = resp.json()
        assert body["reason"] == "validation_rejected"
        assert body["attribute"] == "size"
        assert staged_files() == []

    def test_other_policies_keep_defaults(self, small_client):
        config = small_client.app.state.config
        assert config.policy("image").max_bytes == 1024
        assert config.policy("image").folder == "user-uploads"
        assert config.policy("document").max_bytes == 10 * 1024 * 1024


# ---------------------------------------------------------------------------
# Remote delete and health
# ---------------------------------------------------------------------------


class TestDeleteRemote:
    def test_delete_existing(self, api_client: TestClient, fake_store):
        fake_store.objects["user-uploads/photo-1-1"] = b"x"

        resp = api_client.delete("/api/upload/user-uploads/photo-1-1")

        assert resp.status_code == 200
        assert resp.json() == {"public_id": "user-uploads/photo-1-1", "deleted": True}
        assert fake_store.objects == {}

    def test_delete_missing(self, api_client: TestClient):
        resp = api_client.delete("/api/upload/user-uploads/nope", params={"resource_type": "raw"})

        assert resp.status_code == 404
        assert resp.json()["reason"] == "not_found"

    def test_delete_provider_error(self, api_client: TestClient, fake_store, monkeypatch):
        def boom(public_id, resource_type):
            raise RuntimeError("401 Unauthorized")

        monkeypatch.setattr(fake_store, "delete", boom)

        resp = api_client.delete("/api/upload/user-uploads/photo")

        assert resp.status_code == 502
        assert resp.json()["details"] == "fake: 401 Unauthorized"


# ---------------------------------------------------------------------------
# Form lifecycle
# ---------------------------------------------------------------------------


class TestFormRelease:
    @pytest.fixture
    def closed_forms(self, monkeypatch):
        closed = []
        original_close = UploadForm.close

        async def counting_close(form):
            closed.append(sorted(form.files))
            await original_close(form)

        monkeypatch.setattr(UploadForm, "close", counting_close)
        return closed

    def test_form_closed_after_success(self, api_client: TestClient, closed_forms):
        resp = api_client.post("/api/upload/image", files={"image": _image()})

        assert resp.status_code == 200
        assert closed_forms == [["image"]]

    def test_form_closed_when_request_is_refused(self, api_client: TestClient, closed_forms):
        resp = api_client.post(
            "/api/upload/image", files=[("image", _image()), ("image", _image("b.jpg"))]
        )

        assert resp.status_code == 400
        assert closed_forms == [["image"]]

    def test_form_closed_for_bundle_with_unknown_field(self, api_client: TestClient, closed_forms):
        resp = api_client.post("/api/upload/bundle", files={"banner": _image()})

        assert resp.status_code == 400
        assert closed_forms == [["banner"]]


def test_health(api_client: TestClient):
    resp = api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
