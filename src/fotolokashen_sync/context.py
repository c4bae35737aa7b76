from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from fotolokashen_sync.auth.clock import Clock, default_clock
from fotolokashen_sync.auth.session import AuthSessionManager
from fotolokashen_sync.auth.store import DiskTokenStore, TokenStore
from fotolokashen_sync.config import ClientConfig
from fotolokashen_sync.transport import AuthenticatedTransport
from fotolokashen_sync.upload.orchestrator import UploadOrchestrator
from fotolokashen_sync.upload.queue import OfflineRetryQueue
from fotolokashen_sync.upload.service import PhotoUploadService


@dataclass(frozen=True)
class SessionContext:
    """
    Fully wired collaborators for one client session, built from a
    :class:`ClientConfig`.  Everything shares the same store and transport.
    """

    config: ClientConfig
    store: TokenStore
    transport: AuthenticatedTransport
    auth: AuthSessionManager
    orchestrator: UploadOrchestrator
    queue: OfflineRetryQueue
    uploads: PhotoUploadService


def build_session_context(
    config: ClientConfig,
    *,
    store: TokenStore | None = None,
    client: httpx.AsyncClient | None = None,
    clock: Clock = default_clock,
) -> SessionContext:
    store = store or DiskTokenStore(
        config.auth_dir,
        encryption_key=config.store_key,
        clock=clock,
        refresh_lead_seconds=config.refresh_lead_seconds,
    )
    transport = AuthenticatedTransport(
        store,
        base_url=config.backend_url,
        client=client,
        timeout=config.request_timeout,
    )
    auth = AuthSessionManager(
        transport,
        store,
        backend_url=config.backend_url,
        client_id=config.client_id,
        redirect_uri=config.redirect_uri,
        scopes=config.scopes,
        clock=clock,
        refresh_lead_seconds=config.refresh_lead_seconds,
    )
    orchestrator = UploadOrchestrator(
        transport,
        auth,
        upload_endpoint=config.upload_endpoint,
        compression=config.compression,
        clock=clock,
        step_retries=config.step_retries,
    )
    queue = OfflineRetryQueue(config.queue_dir, max_retries=config.max_retries, clock=clock)
    uploads = PhotoUploadService(
        orchestrator,
        queue,
        auth,
        max_concurrent=config.max_concurrent_uploads,
        offline_mode=config.offline_mode,
    )
    return SessionContext(
        config=config,
        store=store,
        transport=transport,
        auth=auth,
        orchestrator=orchestrator,
        queue=queue,
        uploads=uploads,
    )


@asynccontextmanager
async def open_session(
    config: ClientConfig | None = None, **kwargs
) -> AsyncIterator[SessionContext]:
    """Build a :class:`SessionContext` and close its HTTP client on exit."""
    context = build_session_context(config or ClientConfig.from_env(), **kwargs)
    try:
        yield context
    finally:
        await context.transport.aclose()
