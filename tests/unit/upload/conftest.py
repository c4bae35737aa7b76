"""Fake backend + storage provider shared by the upload tests."""

from __future__ import annotations

import io
import json
from typing import Callable

import httpx
import pytest
from PIL import Image

from fotolokashen_sync.auth.models import Credential
from fotolokashen_sync.auth.session import AuthSessionManager
from fotolokashen_sync.auth.store import MemoryTokenStore
from fotolokashen_sync.transport import AuthenticatedTransport
from fotolokashen_sync.upload.models import UploadJob
from fotolokashen_sync.upload.orchestrator import UploadOrchestrator

BACKEND = "https://api.test"
PROVIDER = "https://upload.test/api/v1/files/upload"


class FakeServers:
    """Scriptable stand-in for the backend API and the storage provider.

    ``script`` maps a step name (``request``, ``provider``, ``confirm``) to a
    list of overrides consumed one per call; an override is either an
    ``httpx.Response`` or an exception instance to raise.
    """

    def __init__(self, clock) -> None:
        self.clock = clock
        self.calls: list[tuple[str, httpx.Request]] = []
        self.script: dict[str, list] = {"request": [], "provider": [], "confirm": []}
        self._next_photo_id = 101

    def count(self, step: str) -> int:
        return sum(1 for name, _ in self.calls if name == step)

    def bodies(self, step: str) -> list:
        return [request for name, request in self.calls if name == step]

    def _override(self, step: str, request: httpx.Request):
        if self.script[step]:
            item = self.script[step].pop(0)
            if isinstance(item, Exception):
                if isinstance(item, httpx.RequestError):
                    item.request = request
                raise item
            return item
        return None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.url.host == "upload.test":
            step = "provider"
        elif path.endswith("/request-upload"):
            step = "request"
        elif path.endswith("/confirm"):
            step = "confirm"
        elif path == "/api/auth/oauth/token":
            self.calls.append(("refresh", request))
            return httpx.Response(
                200, json={"access_token": "at-2", "token_type": "Bearer", "expires_in": 86400}
            )
        elif path == "/api/auth/oauth/revoke":
            self.calls.append(("revoke", request))
            return httpx.Response(200, json={"success": True})
        else:  # pragma: no cover
            raise AssertionError(f"unexpected request {request.url}")

        self.calls.append((step, request))
        override = self._override(step, request)
        if override is not None:
            return override

        if step == "request":
            photo_id = self._next_photo_id
            self._next_photo_id += 1
            return httpx.Response(
                200,
                json={
                    "photoId": photo_id,
                    "uploadUrl": PROVIDER,
                    "uploadToken": f"tok-{photo_id}",
                    "signature": f"sig-{photo_id}",
                    "expire": int(self.clock.now + 600),
                    "fileName": f"photo-{photo_id}.jpg",
                    "folder": "/locations/456",
                    "publicKey": "public_abc",
                },
            )
        if step == "provider":
            return httpx.Response(
                200,
                json={
                    "fileId": "file-xyz",
                    "name": "photo.jpg",
                    "url": "https://ik.test/locations/456/photo.jpg",
                    "thumbnailUrl": "https://ik.test/tr/photo.jpg",
                    "width": 64,
                    "height": 48,
                    "size": 1234,
                },
            )
        photo_id = int(path.split("/")[-2])
        confirm = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "success": True,
                "photo": {
                    "id": photo_id,
                    "imagekitFilePath": "/locations/456/photo.jpg",
                    "url": confirm["imagekitUrl"],
                    "uploadedAt": "2024-01-01T00:00:00Z",
                },
            },
        )


@pytest.fixture
def servers(clock) -> FakeServers:
    return FakeServers(clock)


@pytest.fixture
def store(clock) -> MemoryTokenStore:
    store = MemoryTokenStore(clock=clock)
    store.save(
        Credential(
            access_token="at-1", refresh_token="rt-1", expires_at=clock.now + 3600, subject_id="7"
        )
    )
    return store


@pytest.fixture
def auth(servers, store, clock) -> AuthSessionManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(servers))
    transport = AuthenticatedTransport(store, base_url=BACKEND, client=client)
    return AuthSessionManager(
        transport,
        store,
        backend_url=BACKEND,
        client_id="fotolokashen-ios",
        redirect_uri="fotolokashen://oauth-callback",
        clock=clock,
    )


@pytest.fixture
def orchestrator(auth, clock) -> UploadOrchestrator:
    return UploadOrchestrator(
        auth.transport,
        auth,
        upload_endpoint=PROVIDER,
        clock=clock,
        step_retries=2,
        retry_backoff=0,
    )


@pytest.fixture
def jpeg() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), (200, 100, 50)).save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture
def make_job(jpeg, clock) -> Callable:
    def _make(**overrides) -> UploadJob:
        kwargs = dict(
            gps_latitude=34.05,
            gps_longitude=-118.24,
            gps_altitude=89.0,
            gps_accuracy=5.0,
            caption="front gate",
            clock=clock,
        )
        kwargs.update(overrides)
        return UploadJob.new(jpeg, 456, **kwargs)

    return _make
