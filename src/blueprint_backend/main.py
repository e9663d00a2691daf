from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, Response, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from omegaconf import DictConfig
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .access import AccessControl
from .blueprints import BlueprintRecord, BlueprintStore
from .configuration import configure_logging, load_config
from .conversion import ConversionScheduler
from .database import Database
from .errors import DeletionBlocked, DocumentRejected, ObjectNotFound, RecordNotFound
from .integrity import BlobCleanup, IntegrityGuard
from .models import BlueprintPublic, BlueprintUpdate, NotificationPublic, TaskPublic
from .notifications import NotificationBus, NotificationStore, Notifier
from .object_store import ObjectStore, build_object_store
from .rendering import IMAGE_CONTENT_TYPE, PageRenderer
from .tasks import TaskStore
from .tokens import TokenManager
from .utils import declared_mime_type, display_name_from_filename, object_key
from .validation import DocumentValidator
from .websocket import serve_websocket

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: DictConfig
    database: Database
    blueprints: BlueprintStore
    tasks: TaskStore
    tokens: TokenManager
    access: AccessControl
    store: ObjectStore
    validator: DocumentValidator
    bus: NotificationBus
    notifications: NotificationStore
    scheduler: ConversionScheduler
    cleanup: BlobCleanup
    guard: IntegrityGuard

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=True)
        self.cleanup.shutdown(wait=True)


def build_services(config: DictConfig, store: Optional[ObjectStore] = None) -> Services:
    database = Database(Path(str(config.database.path)))
    blueprints = BlueprintStore(database)
    store = store or build_object_store(config)
    bus = NotificationBus()
    notifications = NotificationStore(database)
    renderer = PageRenderer(
        zoom=float(config.conversion.zoom),
        max_dimension=int(config.conversion.max_dimension),
        unit=str(config.conversion.page_unit),
    )
    cleanup = BlobCleanup(
        blueprints,
        store,
        max_attempts=int(config.cleanup.max_attempts),
        backoff_min=float(config.cleanup.backoff_min),
        backoff_max=float(config.cleanup.backoff_max),
    )
    return Services(
        config=config,
        database=database,
        blueprints=blueprints,
        tasks=TaskStore(database),
        tokens=TokenManager(database),
        access=AccessControl(database),
        store=store,
        validator=DocumentValidator(str(config.upload.accepted_mime_type)),
        bus=bus,
        notifications=notifications,
        scheduler=ConversionScheduler(
            blueprints,
            store,
            renderer,
            Notifier(bus, notifications),
            max_workers=int(config.conversion.max_workers),
            source_name=str(config.storage.source_name),
        ),
        cleanup=cleanup,
        guard=IntegrityGuard(database, blueprints, cleanup),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_actor(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    actor = services.tokens.resolve(token.strip()) if scheme.lower() == "bearer" else None
    if actor is None:
        raise HTTPException(status_code=401, detail="unauthorized")
    return actor


def _require_member(services: Services, project: str, actor: str) -> None:
    if not services.access.is_member(project, actor):
        raise HTTPException(status_code=403, detail="forbidden")


def _load_blueprint(services: Services, blueprint_id: str, actor: str) -> BlueprintRecord:
    """
    Resolve a blueprint for a project member.

    Unknown ids answer 403 like foreign ones. Members of the owning project
    get 404 for deleted ones.
    """
    record = services.blueprints.find(blueprint_id)
    if record is None:
        raise HTTPException(status_code=403, detail="forbidden")
    _require_member(services, record.project, actor)
    if record.deleted:
        raise HTTPException(status_code=404, detail=RecordNotFound.code)
    return record


def create_app(config: Optional[DictConfig] = None, store: Optional[ObjectStore] = None) -> FastAPI:
    """
    Build the API application.

    Run with:
        uvicorn blueprint_backend.main:create_app --factory --host 0.0.0.0 --port 8000
    """
    config = config if config is not None else load_config()
    configure_logging(config)
    services = build_services(config, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.cleanup.resume_pending()
        yield
        services.shutdown()

    app = FastAPI(title=str(config.app.title), version=str(config.app.version), lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.app.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))

    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/projects/id/{project_id}/blueprints", response_model=BlueprintPublic)
    async def upload_blueprint(
        project_id: str,
        blueprint: UploadFile = File(...),
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> BlueprintPublic:
        if not await run_in_threadpool(services.access.is_member, project_id, actor):
            raise HTTPException(status_code=403, detail="forbidden")

        buffer = bytearray()
        while chunk := await blueprint.read(int(services.config.upload.chunk_size)):
            buffer.extend(chunk)
        await blueprint.close()
        data = bytes(buffer)

        try:
            page_count = await run_in_threadpool(
                services.validator.validate,
                data,
                declared_mime_type(blueprint.content_type, blueprint.filename),
            )
        except DocumentRejected as exc:  # noqa: BLE001
            logger.info(f"Upload to project {project_id} rejected: {exc.code} ({exc})")
            raise HTTPException(status_code=400, detail=exc.code) from exc

        blueprint_id = uuid4().hex
        key_prefix = object_key(str(services.config.storage.key_root), blueprint_id)
        await run_in_threadpool(
            services.store.put,
            object_key(key_prefix, str(services.config.storage.source_name)),
            data,
            "application/pdf",
        )

        try:
            record = await run_in_threadpool(
                services.blueprints.create,
                display_name_from_filename(blueprint.filename),
                project_id,
                key_prefix,
                actor,
                blueprint_id,
            )
        except Exception:
            logger.exception(f"Could not create blueprint {blueprint_id}, removing {key_prefix}")
            await run_in_threadpool(services.store.delete_prefix, key_prefix)
            raise

        try:
            await run_in_threadpool(services.scheduler.schedule, record.id, actor)
        except RuntimeError as exc:
            logger.error(f"Conversion of blueprint {record.id} could not be queued: {exc}")
            raise HTTPException(status_code=503, detail="conversionUnavailable") from exc
        logger.info(f"Blueprint {record.id} ({page_count} pages) accepted from {actor}")
        return record.to_public()

    @app.get("/projects/id/{project_id}/blueprints", response_model=List[BlueprintPublic])
    def list_blueprints(
        project_id: str,
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> List[BlueprintPublic]:
        _require_member(services, project_id, actor)
        return [record.to_public() for record in services.blueprints.list_by_project(project_id)]

    @app.get("/projects/id/{project_id}/notifications", response_model=List[NotificationPublic])
    def list_notifications(
        project_id: str,
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> List[NotificationPublic]:
        _require_member(services, project_id, actor)
        return services.notifications.list_for_project(project_id)

    @app.get("/blueprints/id/{blueprint_id}", response_model=BlueprintPublic)
    def get_blueprint(
        blueprint_id: str,
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> BlueprintPublic:
        return _load_blueprint(services, blueprint_id, actor).to_public()

    @app.put("/blueprints/id/{blueprint_id}", status_code=204)
    def update_blueprint(
        blueprint_id: str,
        body: BlueprintUpdate,
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> Response:
        _load_blueprint(services, blueprint_id, actor)
        try:
            services.blueprints.update(blueprint_id, **body.model_dump(exclude_unset=True))
        except RecordNotFound as exc:  # noqa: BLE001
            raise HTTPException(status_code=404, detail=exc.code) from exc
        return Response(status_code=204)

    @app.delete("/blueprints/id/{blueprint_id}", status_code=204)
    def delete_blueprint(
        blueprint_id: str,
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> Response:
        _load_blueprint(services, blueprint_id, actor)
        try:
            services.guard.delete(blueprint_id)
        except DeletionBlocked as exc:  # noqa: BLE001
            raise HTTPException(status_code=409, detail=exc.code) from exc
        except RecordNotFound as exc:  # noqa: BLE001
            raise HTTPException(status_code=404, detail=exc.code) from exc
        return Response(status_code=204)

    @app.get("/blueprints/id/{blueprint_id}/tasks", response_model=List[TaskPublic])
    def list_blueprint_tasks(
        blueprint_id: str,
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> List[TaskPublic]:
        record = _load_blueprint(services, blueprint_id, actor)
        return [task.to_public() for task in services.tasks.list_on_blueprint(record.id)]

    @app.get("/blueprints/id/{blueprint_id}/pages/{page_number}")
    def get_page_image(
        blueprint_id: str,
        page_number: int,
        actor: str = Depends(get_actor),
        services: Services = Depends(get_services),
    ) -> Response:
        record = _load_blueprint(services, blueprint_id, actor)
        if page_number < 1 or page_number > len(record.pages):
            raise HTTPException(status_code=404, detail="pageNotRendered")
        try:
            image = services.store.get(object_key(record.key_prefix, page_number - 1))
        except ObjectNotFound as exc:  # noqa: BLE001
            raise HTTPException(status_code=404, detail="pageNotRendered") from exc
        return Response(content=image, media_type=IMAGE_CONTENT_TYPE)

    @app.websocket("/ws")
    async def notifications_socket(websocket: WebSocket) -> None:
        await serve_websocket(websocket, services.bus, services.tokens, services.access)

    return app
