"""Shared pytest fixtures: an in-memory PocketBase speaking the requests API."""

import json
import time
from urllib.parse import parse_qs, unquote, urlsplit

import pytest
import requests
from jose import jwt
from requests.structures import CaseInsensitiveDict

from pbsync.config import AppConfig, CredentialSettings, InstanceCredentials
from pbsync.credentials import CredentialResolver
from pbsync.pipeline.readiness import ReadinessPoller
from pbsync.pipeline.sync import SyncPipeline
from pbsync.pocketbase.client import PocketBaseSession
from pbsync.transfer import TransferEngine


def make_token(exp_offset: float = 3600, **claims) -> str:
    payload = {"id": "su1", "type": "auth", **claims}
    if exp_offset is not None:
        payload["exp"] = int(time.time() + exp_offset)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


class FakeResponse:
    """Just enough of ``requests.Response`` for pbsync."""

    def __init__(self, status_code=200, payload=None, body=b"", headers=None,
                 chunks=None, fail_after_chunks=None):
        self.status_code = status_code
        self._payload = payload
        self.content = json.dumps(payload).encode() if payload is not None else body
        self.headers = CaseInsensitiveDict(headers or {})
        self._chunks = chunks
        self._fail_after = fail_after_chunks
        self.closed = False
        self.reason = "OK" if status_code < 400 else "Error"

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        return self.content.decode(errors="replace")

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload

    def iter_content(self, chunk_size=1):
        chunks = self._chunks
        if chunks is None:
            chunks = [self.content[i:i + chunk_size] for i in range(0, len(self.content), chunk_size)]
        for i, chunk in enumerate(chunks):
            if self._fail_after is not None and i >= self._fail_after:
                raise requests.ConnectionError("connection reset by peer")
            yield chunk

    def close(self):
        self.closed = True


class FakePocketBase:
    """One fake instance. Records every call as ``(method, path)``."""

    def __init__(self, base_url, email="admin@example.com", password="secret", can_backup=True):
        self.base_url = base_url
        self.email = email
        self.password = password
        self.can_backup = can_backup
        self.token = make_token()
        self.backups: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.uploads: list[tuple[str, bytes, str]] = []
        self.restored: list[str] = []
        self.file_tokens: list[str] = []
        self.health_failures = 0
        self.fail = {}
        self.send_content_length = True
        self.download_fail_after_chunks = None
        self.backup_payload = b"PK\x03\x04" + b"\x00" * 1020

    def _auth_ok(self, headers):
        return (headers or {}).get("Authorization") == self.token

    def handle(self, method, path, query, headers, json_body, files):
        self.calls.append((method, path))
        key = (method, path)
        if key in self.fail:
            return self.fail[key]

        if path == "/api/collections/_superusers/auth-with-password" and method == "POST":
            if json_body == {"identity": self.email, "password": self.password}:
                return FakeResponse(200, {"token": self.token, "record": {"id": "su1"}})
            return FakeResponse(400, {"code": 400, "message": "Failed to authenticate.", "data": {}})

        if path == "/api/health" and method == "GET":
            if self.health_failures > 0:
                self.health_failures -= 1
                raise requests.ConnectionError("connection refused")
            data = {"canBackup": self.can_backup} if self._auth_ok(headers) else {}
            return FakeResponse(200, {"code": 200, "message": "API is healthy.", "data": data})

        if path == "/api/files/token" and method == "POST":
            if not self._auth_ok(headers):
                return FakeResponse(401, {"message": "unauthorized"})
            token = f"ft{len(self.file_tokens)}"
            self.file_tokens.append(token)
            return FakeResponse(200, {"token": token})

        if path == "/api/backups" and method == "POST":
            if not self._auth_ok(headers):
                return FakeResponse(401, {"message": "unauthorized"})
            self.backups[json_body["name"]] = self.backup_payload
            return FakeResponse(204)

        if path == "/api/backups/upload" and method == "POST":
            if not self._auth_ok(headers):
                return FakeResponse(401, {"message": "unauthorized"})
            name, data, content_type = files["file"]
            self.uploads.append((name, data, content_type))
            self.backups[name] = data
            return FakeResponse(204)

        if path.startswith("/api/backups/"):
            rest = unquote(path[len("/api/backups/"):])
            if method == "GET":
                token = query.get("token", [""])[0]
                if token not in self.file_tokens or rest not in self.backups:
                    return FakeResponse(404, {"message": "not found"})
                data = self.backups[rest]
                headers = {"Content-Length": str(len(data))} if self.send_content_length else {}
                chunks = [data[i:i + 4096] for i in range(0, len(data), 4096)]
                return FakeResponse(200, body=data, headers=headers, chunks=chunks,
                                    fail_after_chunks=self.download_fail_after_chunks)
            if not self._auth_ok(headers):
                return FakeResponse(401, {"message": "unauthorized"})
            if method == "DELETE":
                if rest not in self.backups:
                    return FakeResponse(404, {"message": "missing backup"})
                del self.backups[rest]
                return FakeResponse(204)
            if method == "POST" and rest.endswith("/restore"):
                name = rest[: -len("/restore")]
                if name not in self.backups:
                    return FakeResponse(400, {"message": "missing backup"})
                self.restored.append(name)
                return FakeResponse(204)

        return FakeResponse(404, {"message": f"no route {method} {path}"})


class FakeHTTP:
    """Routes ``requests.Session``-style calls to fake instances by URL prefix."""

    def __init__(self, *instances):
        self.instances = {i.base_url: i for i in instances}

    def request(self, method, url, headers=None, json=None, files=None, timeout=None, stream=False, **kwargs):
        parts = urlsplit(url)
        base = f"{parts.scheme}://{parts.netloc}"
        instance = self.instances.get(base)
        if instance is None:
            raise requests.ConnectionError(f"cannot connect to {base}")
        return instance.handle(method, parts.path, parse_qs(parts.query), headers, json, files)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)


@pytest.fixture
def source():
    return FakePocketBase("http://source.test")


@pytest.fixture
def target():
    return FakePocketBase("http://target.test", email="root@example.com", password="hunter2")


@pytest.fixture
def http(source, target):
    return FakeHTTP(source, target)


@pytest.fixture
def no_sleep():
    delays = []
    return delays, delays.append


@pytest.fixture
def env_file(tmp_path, source, target):
    path = tmp_path / ".env"
    path.write_text(
        "# credentials\n"
        f"SOURCE_URL={source.base_url}\n"
        f"SOURCE_EMAIL={source.email}\n"
        f"SOURCE_PASSWORD={source.password}\n"
        f"TARGET_URL={target.base_url}/\n"
        f"TARGET_EMAIL={target.email}\n"
        f"TARGET_PASSWORD={target.password}\n"
    )
    return path


@pytest.fixture
def app_config(tmp_path, env_file):
    return AppConfig(
        transfer={"work_dir": tmp_path / "backups"},
        readiness={"interval": 1.5},
        credentials={"env_file": env_file, "interactive": False, "use_environment": False},
    )


@pytest.fixture
def make_pipeline(app_config, http, no_sleep):
    """Pipeline wired to the fake instances. Returns (pipeline, recorded sleeps)."""

    def factory(config=None, **kwargs):
        config = config or app_config
        delays, sleep = no_sleep

        def session_factory(creds: InstanceCredentials, role: str) -> PocketBaseSession:
            return PocketBaseSession.authenticate(
                creds.url, creds.email, creds.password.get_secret_value(), role=role, http=http
            )

        kwargs.setdefault("resolver", CredentialResolver(config.credentials))
        kwargs.setdefault("session_factory", session_factory)
        kwargs.setdefault("transfer", TransferEngine(http=http, chunk_size=4096))
        kwargs.setdefault("poller", ReadinessPoller(interval=config.readiness.interval, sleep=sleep))
        return SyncPipeline(config, **kwargs), delays

    return factory


@pytest.fixture
def source_session(source, http):
    return PocketBaseSession.authenticate(source.base_url, source.email, source.password, http=http)


@pytest.fixture
def target_session(target, http):
    return PocketBaseSession.authenticate(
        target.base_url, target.email, target.password, role="target", http=http
    )


@pytest.fixture
def credential_settings(tmp_path):
    return CredentialSettings(env_file=tmp_path / "missing.env", use_environment=False, interactive=True)
