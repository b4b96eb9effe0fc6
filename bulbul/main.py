# bulbul/main.py
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from .assets import LocalAssetStorage
from .config import Settings, load_settings
from .errors import StorageIO, ValidationFailed
from .hub import BroadcastHub, EventStreamConnection, stream_events
from .schemas import ImageUpload, Message, Post, Stats
from .store import ContentStore

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )


def get_store(request: Request) -> ContentStore:
    return request.app.state.store


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def read_upload(image: Optional[UploadFile], settings: Settings) -> Optional[ImageUpload]:
    if image is None or not image.filename:
        return None
    if image.content_type not in settings.allowed_image_types:
        raise ValidationFailed("Only JPEG, PNG, and WebP images are allowed")
    data = await image.read()
    if len(data) > settings.max_upload_bytes:
        raise ValidationFailed(f"Image exceeds {settings.max_upload_bytes} bytes")
    return ImageUpload(data=data, filename=image.filename, content_type=image.content_type)


def _form_fields(**values) -> dict:
    # form fields the client left out must not overwrite anything; values stay
    # raw text so the post schemas parse them (e.g. "published") into 400s
    return {k: v for k, v in values.items() if v is not None}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    configure_logging(settings.log_level)
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Serving uploads from %s", settings.uploads_dir)
    yield


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    hub = BroadcastHub()
    assets = LocalAssetStorage(settings.uploads_dir, settings.upload_url_prefix)
    store = ContentStore(assets, notifier=hub.publish, broadcast_views=settings.broadcast_views)

    app = FastAPI(title="BulBul Live Posts", lifespan=lifespan)
    app.state.settings = settings
    app.state.hub = hub
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # the directory is created on startup, not at import
    app.mount(
        settings.upload_url_prefix,
        StaticFiles(directory=settings.uploads_dir, check_dir=False),
        name="uploads",
    )

    @app.exception_handler(ValidationFailed)
    async def validation_failed(request: Request, exc: ValidationFailed):
        return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(StorageIO)
    async def storage_failed(request: Request, exc: StorageIO):
        logger.error("Asset write failed: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Failed to store image"})

    @app.get("/api/events")
    async def events(hub: BroadcastHub = Depends(get_hub), settings: Settings = Depends(get_settings)):
        connection = EventStreamConnection(max_pending=settings.stream_queue_size)
        return StreamingResponse(
            stream_events(hub, connection, heartbeat=settings.heartbeat_seconds),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/api/posts", response_model=List[Post])
    async def list_posts(store: ContentStore = Depends(get_store)):
        return store.list()

    @app.get("/api/posts/{post_id}", response_model=Post)
    async def get_post(post_id: str, store: ContentStore = Depends(get_store)):
        post = store.get(post_id)
        if not post:
            raise HTTPException(status_code=404, detail="Post not found")
        return post

    @app.post("/api/posts", response_model=Post, status_code=201)
    async def create_post(
        title: Optional[str] = Form(None),
        content: Optional[str] = Form(None),
        author: Optional[str] = Form(None),
        category: Optional[str] = Form(None),
        published: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        store: ContentStore = Depends(get_store),
        settings: Settings = Depends(get_settings),
    ):
        upload = await read_upload(image, settings)
        fields = _form_fields(title=title, content=content, author=author,
                              category=category, published=published)
        return store.create(fields, image=upload)

    @app.put("/api/posts/{post_id}", response_model=Post)
    async def update_post(
        post_id: str,
        title: Optional[str] = Form(None),
        content: Optional[str] = Form(None),
        author: Optional[str] = Form(None),
        category: Optional[str] = Form(None),
        published: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        store: ContentStore = Depends(get_store),
        settings: Settings = Depends(get_settings),
    ):
        upload = await read_upload(image, settings)
        fields = _form_fields(title=title, content=content, author=author,
                              category=category, published=published)
        post = store.update(post_id, fields, image=upload)
        if not post:
            raise HTTPException(status_code=404, detail="Post not found")
        return post

    @app.delete("/api/posts/{post_id}", response_model=Message)
    async def delete_post(post_id: str, store: ContentStore = Depends(get_store)):
        if not store.delete(post_id):
            raise HTTPException(status_code=404, detail="Post not found")
        return {"message": "Post deleted successfully"}

    @app.post("/api/posts/{post_id}/view", response_model=Message)
    async def view_post(post_id: str, store: ContentStore = Depends(get_store)):
        store.increment_views(post_id)
        return {"message": "View count updated"}

    @app.post("/api/posts/{post_id}/like", response_model=Post)
    async def like_post(post_id: str, store: ContentStore = Depends(get_store)):
        post = store.like(post_id)
        if not post:
            raise HTTPException(status_code=404, detail="Post not found")
        return post

    @app.get("/api/stats", response_model=Stats)
    async def stats(store: ContentStore = Depends(get_store)):
        return store.stats()

    return app


app = create_app()
