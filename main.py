import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import List, Optional

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

import config
import schemas
from database import init_db, make_engine, make_sessionmaker
from errors import QuotaExceeded, ScopeUnavailable, StorageWriteFailure
from gateway import StorageGateway
from realtime import ChangeFeed
from scope import Scope, network_prefix
from storage import StorageBackend
from sweeper import days_remaining, run_forever
from uploads import ResumableUploads, UploadCoordinator, UploadSource

logger = logging.getLogger(__name__)


def get_client_ip(request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else ""


def scope_for(request, space: Optional[str] = None) -> Scope:
    """Private space from header/query when given, else the caller's network prefix."""
    key = request.headers.get("X-Private-Space")
    if key is None:
        key = space
    if key is not None:
        return Scope.private(key)

    ip = get_client_ip(request)
    try:
        return Scope.network(network_prefix(ip))
    except ValueError:
        raise ScopeUnavailable(f"Cannot derive a network from client address {ip!r}")


def _file_out(f) -> schemas.SharedFileOut:
    out = schemas.SharedFileOut.model_validate(f)
    out.days_remaining = days_remaining(f.created_at)
    return out


def _session_out(upload) -> schemas.ChunkSessionOut:
    return schemas.ChunkSessionOut(
        session_id=upload.id, filename=upload.filename, status=upload.status,
        total_chunks=upload.total_chunks, received_indices=sorted(upload.received),
        missing_indices=upload.missing, file_id=upload.file_id,
    )


def create_app(database_url: str = None, storage: StorageBackend = None,
               retry_delay: float = None, sweep_in_process: bool = None) -> FastAPI:
    if sweep_in_process is None:
        sweep_in_process = config.SWEEP_IN_PROCESS

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = make_engine(database_url)
        await init_db(engine)
        feed = ChangeFeed()
        blobs = storage or StorageBackend()
        app.state.feed = feed
        app.state.gateway = StorageGateway(make_sessionmaker(engine), blobs, feed=feed, retry_delay=retry_delay)
        sweep_task = asyncio.create_task(run_forever(gateway=app.state.gateway)) if sweep_in_process else None
        logger.info(f"BridgeSpace ready: blobs on {blobs.backend_name}")
        yield
        if sweep_task is not None:
            sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweep_task
        await engine.dispose()

    app = FastAPI(
        title="BridgeSpace API",
        description="Share files and text with devices on the same network or in a private space",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ─── Exception handlers ───────────────────────────────────────────────────

    @app.exception_handler(ScopeUnavailable)
    async def scope_unavailable_handler(request: Request, exc: ScopeUnavailable):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(QuotaExceeded)
    async def quota_handler(request: Request, exc: QuotaExceeded):
        return JSONResponse(
            status_code=413,
            content={"detail": str(exc), "limit": exc.limit, "remaining": exc.remaining},
        )

    @app.exception_handler(StorageWriteFailure)
    async def storage_write_handler(request: Request, exc: StorageWriteFailure):
        return JSONResponse(status_code=502, content={"detail": str(exc), "file": exc.file_name})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"detail": f"{type(exc).__name__}: {str(exc)}"}
        )

    # ─── System ───────────────────────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    def health(request: Request):
        gateway = request.app.state.gateway
        return {"status": "ok", "service": "BridgeSpace", "storage": gateway.blobs.get_health()}

    @app.get("/limits", response_model=schemas.LimitsOut, tags=["System"])
    def limits():
        return config.limits()

    @app.get("/ip", tags=["Scope"])
    async def my_ip(request: Request):
        ip = get_client_ip(request)
        try:
            prefix = network_prefix(ip)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Not an IP address: {ip!r}")
        try:
            await request.app.state.gateway.register_connection(ip, prefix)
        except Exception as e:
            logger.warning(f"Could not register connection for {prefix}: {e}")
        return {"ip": ip, "network_prefix": prefix}

    @app.get("/scope", response_model=schemas.ScopeOut, tags=["Scope"])
    def current_scope(request: Request, space: Optional[str] = Query(None)):
        return scope_for(request, space).as_dict()

    # ─── Files ────────────────────────────────────────────────────────────────

    @app.get("/files", response_model=List[schemas.SharedFileOut], tags=["Files"])
    async def list_files(request: Request, space: Optional[str] = Query(None),
                         limit: Optional[int] = Query(None, ge=1, le=500)):
        files = await request.app.state.gateway.list_files(scope_for(request, space), limit=limit)
        return [_file_out(f) for f in files]

    @app.post("/files", response_model=schemas.UploadResult, tags=["Files"])
    async def upload_files(request: Request, files: List[UploadFile] = File(...),
                           space: Optional[str] = Query(None)):
        scope = scope_for(request, space)
        sources = []
        for f in files:
            name = f.filename or "file"
            if f.size is not None and f.size > config.MAX_FILE_SIZE:
                raise QuotaExceeded(
                    f"{name} is larger than the {config.MAX_FILE_SIZE // (1024 * 1024)} MB limit",
                    limit=config.MAX_FILE_SIZE,
                )
            # Never buffer more than one byte past the limit; validation rejects the rest.
            data = await f.read(config.MAX_FILE_SIZE + 1)
            sources.append(UploadSource(name=name, data=data, mime_type=f.content_type))
        coordinator = UploadCoordinator(request.app.state.gateway)
        batch = await coordinator.submit(scope, sources)
        report = await batch.wait()
        return schemas.UploadResult(
            uploaded=report.completed, total=report.total,
            skipped_duplicates=report.skipped_duplicates,
            file_ids=report.file_ids, message=report.message,
        )

    @app.delete("/files", response_model=schemas.DeleteResult, tags=["Files"])
    async def delete_all_files(request: Request, space: Optional[str] = Query(None)):
        outcome = await request.app.state.gateway.delete_all_files(scope_for(request, space))
        return schemas.DeleteResult(deleted=outcome.deleted, partial=outcome.partial, warnings=outcome.warnings)

    @app.delete("/files/{file_id}", response_model=schemas.DeleteResult, tags=["Files"])
    async def delete_file(file_id: str, request: Request, space: Optional[str] = Query(None)):
        outcome = await request.app.state.gateway.delete_file(scope_for(request, space), file_id)
        if not outcome.deleted:
            raise HTTPException(status_code=404, detail="File not found")
        return schemas.DeleteResult(deleted=outcome.deleted, partial=outcome.partial, warnings=outcome.warnings)

    @app.get("/files/{file_id}/download", tags=["Files"])
    async def download_file(file_id: str, request: Request, space: Optional[str] = Query(None)):
        opened = await request.app.state.gateway.open_file(scope_for(request, space), file_id)
        if opened is None:
            raise HTTPException(status_code=404, detail="File not found")
        shared, data = opened
        return Response(
            content=data,
            media_type=shared.mime_type,
            headers={"Content-Disposition": f'attachment; filename="{shared.name}"'},
        )

    # ─── Text ─────────────────────────────────────────────────────────────────

    @app.get("/text", response_model=schemas.SharedTextOut, tags=["Text"])
    async def get_text(request: Request, space: Optional[str] = Query(None)):
        row = await request.app.state.gateway.list_text(scope_for(request, space))
        if row is None:
            return schemas.SharedTextOut()
        return row

    @app.put("/text", response_model=schemas.SharedTextOut, tags=["Text"])
    async def put_text(body: schemas.TextUpdate, request: Request, space: Optional[str] = Query(None)):
        return await request.app.state.gateway.upsert_text(scope_for(request, space), body.content)

    # ─── Chunked Upload ───────────────────────────────────────────────────────

    @app.post("/upload/session", response_model=schemas.ChunkSessionOut, tags=["Resumable Upload"])
    async def create_upload_session(session_req: schemas.ChunkSessionCreate, request: Request,
                                    space: Optional[str] = Query(None)):
        uploads = ResumableUploads(request.app.state.gateway)
        upload = await uploads.create_session(
            scope_for(request, space),
            session_req.filename,
            total_chunks=session_req.total_chunks,
            chunk_size=session_req.chunk_size,
            total_size=session_req.total_size,
            expected_hash=session_req.expected_hash,
            mime_type=session_req.mime_type,
        )
        return _session_out(upload)

    @app.post("/upload/chunk/{session_id}", response_model=schemas.ChunkSessionOut, tags=["Resumable Upload"])
    async def upload_chunk(session_id: str, request: Request, chunk_index: int = Query(...),
                           chunk: UploadFile = File(...), space: Optional[str] = Query(None)):
        uploads = ResumableUploads(request.app.state.gateway)
        try:
            data = await chunk.read(config.MAX_FILE_SIZE + 1)
            upload = await uploads.put_chunk(scope_for(request, space), session_id, chunk_index, data)
        except KeyError:
            raise HTTPException(status_code=404, detail="Upload session not found")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _session_out(upload)

    @app.get("/upload/session/{session_id}", response_model=schemas.ChunkSessionOut, tags=["Resumable Upload"])
    async def get_upload_status(session_id: str, request: Request, space: Optional[str] = Query(None)):
        upload = await ResumableUploads(request.app.state.gateway).status(scope_for(request, space), session_id)
        if upload is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_out(upload)

    # ─── Realtime ─────────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def changes(websocket: WebSocket, space: Optional[str] = Query(None)):
        try:
            scope = scope_for(websocket, space)
        except ScopeUnavailable as e:
            await websocket.close(code=1008, reason=str(e))
            return
        await websocket.accept()

        queue: asyncio.Queue = asyncio.Queue()
        sub = websocket.app.state.feed.subscribe(scope, queue.put_nowait)

        async def forward():
            while True:
                event = await queue.get()
                await websocket.send_json(event.as_dict())

        async def drain():
            while True:
                await websocket.receive_text()

        sender = asyncio.ensure_future(forward())
        receiver = asyncio.ensure_future(drain())
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sub.close()
            for task in (sender, receiver):
                task.cancel()
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"Realtime socket for {scope} failed: {error}")
        logger.debug(f"Realtime socket closed for {scope}")

    return app


app = create_app()
