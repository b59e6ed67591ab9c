"""HTTP API: submit projects, follow builds, cancel them and download packages."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Annotated, Any, AsyncGenerator

from litestar import Litestar, get, post
from litestar.config.cors import CORSConfig
from litestar.datastructures import State, UploadFile
from litestar.enums import RequestEncodingType
from litestar.exceptions import (
    ClientException,
    HTTPException,
    NotFoundException,
    TooManyRequestsException,
)
from litestar.params import Body
from litestar.response import Stream

from .config import APK_MEDIA_TYPE, Settings, get_settings
from .coordinator import Coordinator
from .errors import ArtifactNotFound, ArtifactTooLarge, BuildNotFound, RejectedAdmission
from .models import BuildState
from .queue import BuildQueue
from .records import RecordStore
from .store import ArtifactStore
from .toolchain import GradleToolchain, ToolchainAdapter
from .worker import WorkerPool
from .workspace import WorkspaceManager

logger = logging.getLogger("apk_orchestrator")

STREAM_POLL_SECONDS = 0.5


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    )


def _sse(payload: dict[str, Any], event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(payload)}\n\n"


# --- ROUTES ---


@post("/builds")
async def submit_build(
    state: State,
    data: Annotated[dict, Body(media_type=RequestEncodingType.MULTI_PART)],
) -> dict:
    settings: Settings = state.settings
    coordinator: Coordinator = state.coordinator
    store: ArtifactStore = state.store

    tenant_id = str(data.get("tenant_id") or "").strip()
    variant = str(data.get("variant") or "debug").strip()
    upload = data.get("project")
    if not tenant_id:
        raise ClientException(detail="tenant_id is required")
    if not isinstance(upload, UploadFile):
        raise ClientException(detail="project archive is required")

    try:
        await asyncio.to_thread(coordinator.admission_check, tenant_id)
    except RejectedAdmission as exc:
        raise TooManyRequestsException(detail=str(exc)) from exc

    payload = await upload.read()
    if not payload:
        raise ClientException(detail="project archive is empty")
    if len(payload) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail=f"project archive exceeds {settings.max_upload_bytes} bytes")

    try:
        source_key = await asyncio.to_thread(store.put, payload)
    except ArtifactTooLarge as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc

    try:
        request = await asyncio.to_thread(coordinator.submit, tenant_id, source_key, variant)
    except RejectedAdmission as exc:
        raise TooManyRequestsException(detail=str(exc)) from exc
    except ValueError as exc:
        raise ClientException(detail=str(exc)) from exc

    return {
        "request_id": request.request_id,
        "state": request.state.value,
        "source_artifact_key": source_key,
    }


@get("/builds/{request_id:str}")
async def build_status(state: State, request_id: str) -> dict:
    coordinator: Coordinator = state.coordinator
    try:
        return coordinator.status(request_id).as_dict()
    except BuildNotFound as exc:
        raise NotFoundException(detail=str(exc)) from exc


@get("/builds/{request_id:str}/events")
async def stream_build_events(state: State, request_id: str) -> Stream:
    coordinator: Coordinator = state.coordinator
    try:
        coordinator.status(request_id)
    except BuildNotFound as exc:
        raise NotFoundException(detail=str(exc)) from exc

    async def generator() -> AsyncGenerator[str, None]:
        last = None
        while True:
            try:
                view = coordinator.status(request_id).as_dict()
            except BuildNotFound:
                yield _sse({"error": "Invalid ID"}, "error")
                break

            if view != last:
                yield _sse(view)
                last = view

            if view["state"] == BuildState.COMPLETED.value:
                yield _sse(
                    {"request_id": request_id, "output_artifact_key": view["output_artifact_key"]},
                    "complete",
                )
                break
            if view["state"] == BuildState.FAILED.value:
                yield _sse({"request_id": request_id, "error": view["error_summary"]}, "error")
                break
            if view["state"] == BuildState.CANCELLED.value:
                yield _sse({"request_id": request_id}, "cancelled")
                break
            await asyncio.sleep(STREAM_POLL_SECONDS)

    return Stream(generator(), media_type="text/event-stream")


@post("/builds/{request_id:str}/cancel", status_code=200)
async def cancel_build(state: State, request_id: str, tenant_id: str | None = None) -> dict:
    coordinator: Coordinator = state.coordinator
    try:
        current = await asyncio.to_thread(coordinator.cancel, request_id, tenant_id)
    except BuildNotFound as exc:
        raise NotFoundException(detail=str(exc)) from exc
    return {"request_id": request_id, "state": current.value}


@get("/artifacts/{key:str}")
async def download_artifact(state: State, key: str) -> Stream:
    store: ArtifactStore = state.store
    try:
        size = store.size(key)
        chunks = store.stream(key)
    except ArtifactNotFound as exc:
        raise NotFoundException(detail=str(exc)) from exc
    return Stream(
        chunks,
        media_type=APK_MEDIA_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{key[:16]}.apk"',
            "Content-Length": str(size),
        },
    )


@get("/health")
async def health(state: State) -> dict:
    coordinator: Coordinator = state.coordinator
    pool: WorkerPool = state.pool
    return {
        "status": "ok",
        "queued": len(coordinator.queue),
        "workers": pool.size,
        "workers_running": pool.running,
    }


# --- APP ---


def create_app(
    settings: Settings | None = None,
    *,
    toolchain: ToolchainAdapter | None = None,
    start_workers: bool = True,
) -> Litestar:
    settings = settings or get_settings()
    store = ArtifactStore(settings.artifacts_dir, max_bytes=settings.max_upload_bytes)
    records = RecordStore.from_settings(settings)
    coordinator = Coordinator(
        settings,
        queue=BuildQueue(capacity=settings.queue_capacity),
        records=records,
    )
    workspaces = WorkspaceManager(settings.workspaces_dir)
    pool = WorkerPool.from_settings(
        settings,
        coordinator=coordinator,
        store=store,
        workspaces=workspaces,
        toolchain=toolchain or GradleToolchain.from_settings(settings),
    )

    def on_startup() -> None:
        coordinator.recover()
        if start_workers:
            pool.start()

    def on_shutdown() -> None:
        coordinator.close()
        pool.stop(timeout=settings.kill_grace_seconds + 5)
        records.dispose()

    cors = CORSConfig(allow_origins=["*"])
    return Litestar(
        route_handlers=[submit_build, build_status, stream_build_events, cancel_build, download_artifact, health],
        cors_config=cors,
        state=State(
            {
                "settings": settings,
                "store": store,
                "coordinator": coordinator,
                "pool": pool,
            }
        ),
        on_startup=[on_startup],
        on_shutdown=[on_shutdown],
        request_max_body_size=settings.max_upload_bytes + 1024 * 1024,
    )


# --- RUN ---


def main() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    logger.info("[BACKEND] http://%s:%s data_dir=%s", settings.host, settings.port, settings.data_dir)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
