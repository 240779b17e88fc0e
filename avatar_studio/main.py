# avatar_studio/main.py
from contextlib import asynccontextmanager
from typing import Dict, Optional, Sequence

from fastapi import FastAPI, Header, Request
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import UploadFile

from avatar_studio import auth
from avatar_studio.config import Settings, get_settings
from avatar_studio.errors import ERROR_RESPONSES, AvatarError, ValidationError, register_error_handlers
from avatar_studio.ingest import IngestGate, ValidationHook
from avatar_studio.logger import console
from avatar_studio.metrics import router as metrics_router, UPLOAD_REQUESTS
from avatar_studio.models import UploadResponse
from avatar_studio.sessions import SessionStore, build_session_store
from avatar_studio.storage import ensure_directory

UPLOAD_FIELD = "avatar"


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SessionStore] = None,
    hooks: Optional[Sequence[ValidationHook]] = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store if store is not None else build_session_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_directory(settings.upload_dir)
        console.log(
            f"[blue]Avatar API ready: storage={settings.upload_dir} "
            f"sessions={settings.session_backend}[/blue]"
        )
        yield
        close = getattr(store, "close", None)
        if close is not None:
            close()

    app = FastAPI(title="Avatar Upload API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_store = store
    app.state.ingest_gate = IngestGate(settings, store, hooks=hooks)

    register_error_handlers(app)

    # /metrics and /auth/*
    app.include_router(metrics_router)
    app.include_router(auth.router)

    @app.get("/")
    def read_root() -> Dict[str, str]:
        return {"status": "ok", "message": "Avatar upload API"}

    @app.post("/upload", response_model=UploadResponse, responses=ERROR_RESPONSES)
    async def upload_avatar(
        request: Request,
        x_session_token: Optional[str] = Header(None),
    ):
        """
        Multipart body with a single file field "avatar".

        The body is parsed only after the session token resolves, so an
        unauthenticated request never touches the disk.
        """
        gate: IngestGate = request.app.state.ingest_gate
        try:
            gate.authenticate(x_session_token)
            gate.check_content_length(request.headers.get("content-length"))

            form = await request.form(max_files=1)
            try:
                upload = form.get(UPLOAD_FIELD)
                if not isinstance(upload, UploadFile):
                    raise ValidationError("No file uploaded in field 'avatar'")
                result = await gate.ingest(x_session_token, upload)
            finally:
                await form.close()
        except AvatarError as exc:
            UPLOAD_REQUESTS.labels(outcome=exc.code).inc()
            raise

        UPLOAD_REQUESTS.labels(outcome="ok").inc()
        return result.response

    # Stored avatars are served back under the public prefix
    app.mount(
        settings.normalized_prefix,
        StaticFiles(directory=str(settings.upload_dir), check_dir=False),
        name="uploads",
    )
    return app


app = create_app()
