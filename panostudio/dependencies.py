import hmac
from typing import Iterator, Optional
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from panostudio.config import Settings
from panostudio.repository import PanoramaRepository
from panostudio.security.token_manager import TokenManager
from panostudio.services.instagram_service import InstagramService
from panostudio.services.publisher import PublishOrchestrator
from panostudio.services.storage import StorageService
from panostudio.tags import TagResolver


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Iterator[Session]:
    """One session per request, closed when the response is sent."""
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_instagram(request: Request) -> InstagramService:
    return request.app.state.instagram


def get_current_user(
    settings: Settings = Depends(get_settings),
    x_app_password: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """
    Resolve the acting user of a protected request.

    The ``X-App-Password`` header must match ``APP_PASSWORD``; the user id is
    taken from ``X-User-Id`` or falls back to ``APP_USER_ID``. With no
    ``APP_PASSWORD`` configured every protected route is closed.
    """
    expected = settings.app_password
    if not expected or not x_app_password or not hmac.compare_digest(x_app_password, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return (x_user_id or "").strip() or settings.app_user_id


def get_tag_resolver(request: Request, db: Session = Depends(get_db)) -> TagResolver:
    return TagResolver(db, associations_available=request.app.state.tags_available)


def get_repository(
    db: Session = Depends(get_db),
    tags: TagResolver = Depends(get_tag_resolver),
    storage: StorageService = Depends(get_storage),
) -> PanoramaRepository:
    return PanoramaRepository(db, tags, storage)


def get_token_manager(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    instagram: InstagramService = Depends(get_instagram),
) -> TokenManager:
    return TokenManager(db, settings, instagram)


def get_publisher(
    repository: PanoramaRepository = Depends(get_repository),
    tokens: TokenManager = Depends(get_token_manager),
    instagram: InstagramService = Depends(get_instagram),
    settings: Settings = Depends(get_settings),
) -> PublishOrchestrator:
    return PublishOrchestrator(repository, tokens, instagram, settings)
