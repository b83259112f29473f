import os
from contextlib import asynccontextmanager
from typing import Optional
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from panostudio.config import Settings, build_s3_client, logger
from panostudio.database import create_db_engine, create_session_factory, has_table, init_db
from panostudio.lifecycle import InvalidTransition
from panostudio.repository import NotImageOwner, PanoramaNotFound, RepositoryError
from panostudio.routers import admin_token, images, instagram, tags
from panostudio.services.image_processor import ImageProcessingError
from panostudio.services.instagram_service import InstagramService
from panostudio.services.publisher import NoUsableAsset, PublishNotConfigured
from panostudio.services.storage import LocalStorage, S3Storage, StorageError, StorageService


def build_storage(settings: Settings) -> StorageService:
    if settings.use_s3:
        strategy = S3Storage(build_s3_client(settings), settings.storage_public_base)
    else:
        strategy = LocalStorage(settings.local_storage_dir, settings.storage_public_base)
        logger.warning("AWS credentials not configured. Assets are stored on local disk and served from /media.")
    buckets = [settings.bucket_raw, settings.bucket_processed, settings.bucket_optimized]
    return StorageService(strategy, buckets)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error(f"Validation Error: {exc.errors()}")
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return _error(400, f"{field}: {message}" if field else message)

    @app.exception_handler(PanoramaNotFound)
    async def not_found_handler(request: Request, exc: PanoramaNotFound):
        return _error(404, "Image not found")

    @app.exception_handler(NotImageOwner)
    async def not_owner_handler(request: Request, exc: NotImageOwner):
        return _error(401, "Unauthorized")

    @app.exception_handler(InvalidTransition)
    @app.exception_handler(NoUsableAsset)
    @app.exception_handler(ImageProcessingError)
    async def bad_request_handler(request: Request, exc: Exception):
        return _error(400, str(exc))

    @app.exception_handler(PublishNotConfigured)
    async def not_configured_handler(request: Request, exc: PublishNotConfigured):
        logger.error(str(exc))
        return _error(500, str(exc))

    @app.exception_handler(RepositoryError)
    @app.exception_handler(StorageError)
    @app.exception_handler(SQLAlchemyError)
    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return _error(500, "Internal server error")


def create_app(settings: Optional[Settings] = None, instagram_service: Optional[InstagramService] = None) -> FastAPI:
    """
    Build the API application.

    :param settings: Configuration; read from the environment when omitted.
    :type settings: Optional[Settings]
    :param instagram_service: Graph API facade; built from ``settings`` when omitted.
    :type instagram_service: Optional[InstagramService]
    """
    settings = settings or Settings.from_env()
    engine = create_db_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        engine.dispose()

    app = FastAPI(title="Panostudio Backend", lifespan=lifespan)

    init_db(engine)
    app.state.settings = settings
    app.state.session_factory = create_session_factory(engine)
    app.state.tags_available = has_table(engine, "image_tags")
    app.state.storage = build_storage(settings)
    app.state.instagram = instagram_service or InstagramService(settings.graph_api_url)

    install_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(images.router, prefix="/api/images", tags=["images"])
    app.include_router(tags.router, prefix="/api", tags=["tags"])
    app.include_router(instagram.router, prefix="/api/instagram", tags=["instagram"])
    app.include_router(admin_token.router, prefix="/api/admin/instagram-token", tags=["admin"])

    @app.get("/")
    def read_root():
        return {"status": "ok", "message": "Panostudio Backend is running"}

    @app.get("/media/{bucket}/{key:path}")
    def get_media(bucket: str, key: str):
        """Serve an object from local storage (only used when S3 is not configured)."""
        strategy = app.state.storage.strategy
        if not isinstance(strategy, LocalStorage) or bucket not in app.state.storage.buckets:
            raise HTTPException(404, "File not found")
        try:
            path = strategy.path_for(bucket, key)
        except StorageError:
            raise HTTPException(404, "File not found")
        if not os.path.isfile(path):
            raise HTTPException(404, "File not found")
        return FileResponse(path)

    logger.info(f"Panostudio ready (storage={settings.storage_backend}, delete_mode={settings.delete_mode})")
    return app


if __name__ == "__main__":
    uvicorn.run("panostudio.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
