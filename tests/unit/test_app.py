"""
Tests for application wiring and the command line interface.
"""

import asyncio
import json
from datetime import timedelta
from functools import partial

import httpx
import pytest

import proofsync.__main__ as cli
from proofsync.config import AppConfig, BackendChoice, DriveConfig, StorageConfig
from proofsync.credentials import CredentialStore, FileBackend
from proofsync.main import ProofSyncApp
from proofsync.models import Credential, utc_now
from proofsync.oauth.guard import CREDENTIAL_KEY

from tests.unit.fakes import RecordingHandler


JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 1024


class DriveRoutes:
    """Answers folder checks, creates and permission grants."""

    def __init__(self):
        self.folder = lambda request: httpx.Response(200, json={"id": "folder-1", "name": "Proof Photos"})
        self.create = lambda request: httpx.Response(200, json={"id": "abc123", "name": "photo.jpg"})

    def __call__(self, request):
        if request.url.path.endswith("/permissions"):
            return httpx.Response(200, json={"id": "perm-1"})
        if request.method == "GET":
            return self.folder(request)
        return self.create(request)


def userinfo(request):
    return httpx.Response(200, json={"id": "42", "email": "member@club.org"})


def store_credential(path):
    store = CredentialStore(FileBackend(path))
    credential = Credential(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=utc_now() + timedelta(hours=1),
    )
    return store.put_object(f"default/{CREDENTIAL_KEY}", credential.to_dict())


def make_config(tmp_path, oauth_config):
    return AppConfig(
        oauth=oauth_config,
        drive=DriveConfig(folder_id="folder-1"),
        storage=StorageConfig(
            backend=BackendChoice.FILE,
            credentials_path=tmp_path / "credentials.json",
            fallback_db_path=tmp_path / "fallback.db",
        ),
        log_file=None,
    )


class TestProofSyncApp:
    """Tests for ProofSyncApp wiring and status."""

    @pytest.mark.asyncio
    async def test_status_reports_account_and_folder(self, tmp_path, oauth_config):
        routes = DriveRoutes()
        oauth_handler = RecordingHandler(userinfo)
        app = ProofSyncApp(
            make_config(tmp_path, oauth_config),
            oauth_transport=oauth_handler.transport(),
            drive_transport=httpx.MockTransport(routes),
            open_browser=False,
        )
        await store_credential(tmp_path / "credentials.json")

        async with app:
            status = await app.status()

        assert status["authorized"] is True
        assert status["account"]["email"] == "member@club.org"
        assert status["folder_accessible"] is True
        assert status["folder_name"] == "Proof Photos"
        assert status["storage"]["is_secure"] is False
        assert status["pending_uploads"] == 0

    @pytest.mark.asyncio
    async def test_status_diagnoses_missing_folder(self, tmp_path, oauth_config):
        routes = DriveRoutes()
        routes.folder = lambda request: httpx.Response(
            404, json={"error": {"code": 404, "status": "NOT_FOUND"}}
        )
        app = ProofSyncApp(
            make_config(tmp_path, oauth_config),
            oauth_transport=RecordingHandler(userinfo).transport(),
            drive_transport=httpx.MockTransport(routes),
            open_browser=False,
        )
        await store_credential(tmp_path / "credentials.json")

        async with app:
            status = await app.status()

        assert status["folder_accessible"] is False
        assert status["folder_error"]["kind"] == "provider"
        assert "not found" in status["folder_hint"].lower()

    @pytest.mark.asyncio
    async def test_status_without_credential_skips_network(self, tmp_path, oauth_config):
        oauth_handler = RecordingHandler(userinfo)
        drive_handler = RecordingHandler(DriveRoutes())
        app = ProofSyncApp(
            make_config(tmp_path, oauth_config),
            oauth_transport=oauth_handler.transport(),
            drive_transport=drive_handler.transport(),
            open_browser=False,
        )

        async with app:
            status = await app.status()

        assert status["authorized"] is False
        assert "folder_accessible" not in status
        assert oauth_handler.calls == 0
        assert drive_handler.calls == 0


@pytest.fixture
def cli_env(monkeypatch, tmp_path, oauth_config):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", oauth_config.client_id)
    monkeypatch.setenv("GOOGLE_DRIVE_FOLDER_ID", "folder-1")
    monkeypatch.setenv("PROOFSYNC_STORAGE_BACKEND", "file")
    monkeypatch.setenv("PROOFSYNC_CREDENTIALS_PATH", str(tmp_path / "credentials.json"))
    monkeypatch.setenv("PROOFSYNC_FALLBACK_DB", str(tmp_path / "fallback.db"))
    monkeypatch.setenv("PROOFSYNC_LOG_FILE", "")
    monkeypatch.setenv("PROOFSYNC_IDENTITY", "default")
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    monkeypatch.delenv("PROOFSYNC_TOKEN_ENCRYPTION_KEY", raising=False)

    routes = DriveRoutes()
    monkeypatch.setattr(cli, "ProofSyncApp", partial(
        ProofSyncApp,
        oauth_transport=httpx.MockTransport(userinfo),
        drive_transport=httpx.MockTransport(routes),
    ))
    asyncio.run(store_credential(tmp_path / "credentials.json"))

    photo = tmp_path / "proof.jpg"
    photo.write_bytes(JPEG)
    return routes, str(photo)


class TestCommandLine:
    """Tests for proofsync.__main__.main."""

    def test_upload_success(self, cli_env, capsys):
        _, photo = cli_env

        code = cli.main(["upload", photo, "--destination", "Beach Cleanup", "--owner", "s1"])

        assert code == 0
        assert '"state": "completed"' in capsys.readouterr().out

    def test_failed_upload_is_listed_as_pending(self, cli_env, capsys):
        routes, photo = cli_env
        routes.create = lambda request: httpx.Response(
            403, json={"error": {"code": 403, "status": "PERMISSION_DENIED"}}
        )

        assert cli.main(["upload", photo, "--destination", "Beach Cleanup", "--owner", "s1"]) == 1
        capsys.readouterr()

        assert cli.main(["pending", "--owner", "s1"]) == 0
        assert '"owner_id": "s1"' in capsys.readouterr().out

    def test_retry_needs_task_id_or_all(self, cli_env):
        assert cli.main(["retry"]) == 2

    def test_retry_refuses_non_retryable_without_force(self, cli_env, capsys, tmp_path):
        routes, photo = cli_env
        routes.create = lambda request: httpx.Response(403, json={})
        cli.main(["upload", photo, "--destination", "Beach Cleanup", "--owner", "s1"])
        output = capsys.readouterr().out
        task_id = json.loads(output[output.index("{\n"):])["task_id"]
        routes.create = lambda request: httpx.Response(200, json={"id": "abc123"})

        assert cli.main(["retry", task_id]) == 1
        assert cli.main(["retry", task_id, "--force"]) == 0

    def test_status(self, cli_env, capsys):
        assert cli.main(["status"]) == 0
        assert '"folder_accessible": true' in capsys.readouterr().out
