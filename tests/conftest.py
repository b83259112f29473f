import io
import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient
from PIL import Image

from panostudio.config import Settings
from panostudio.database import create_db_engine, create_session_factory, init_db
from panostudio.main import create_app
from panostudio.models import PanoramaSave
from panostudio.repository import PanoramaRepository
from panostudio.services.instagram_service import InstagramService
from panostudio.services.storage import LocalStorage, StorageService
from panostudio.tags import TagResolver

APP_PASSWORD = "open-sesame"
BUCKETS = ["raw-panoramas", "processed-images", "optimized-web"]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        app_password=APP_PASSWORD,
        local_storage_dir=str(tmp_path / "storage"),
        public_base_url="http://testserver",
        instagram_access_token="env-token",
        instagram_business_account_id="17841400000000000",
    )


@pytest.fixture
def db_session():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    session = create_session_factory(engine)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def storage(tmp_path):
    return StorageService(LocalStorage(str(tmp_path / "storage"), "http://testserver/media"), BUCKETS)


@pytest.fixture
def repository(db_session, storage):
    return PanoramaRepository(db_session, TagResolver(db_session), storage)


@pytest.fixture
def make_image(repository):
    """Factory saving a panorama through the repository."""
    def _make(user_id="admin", **fields):
        fields.setdefault("original_url", "http://testserver/media/raw-panoramas/admin/pano.jpg")
        return repository.save(PanoramaSave(**fields), user_id)
    return _make


@pytest.fixture
def instagram():
    """Graph API facade double; no test ever reaches Meta."""
    mock = MagicMock(spec=InstagramService)
    mock.validate_token.return_value = True
    mock.publish_image.return_value = "17900000000000001"
    mock.publish_carousel.return_value = "17900000000000002"
    mock.refresh_token.return_value = {"access_token": "refreshed-token", "expires_in": 5184000}
    mock.fetch_profile.return_value = {"id": "42", "name": "Walking Forward", "email": None}
    return mock


@pytest.fixture
def make_client(instagram):
    clients = []

    def _make(settings):
        client = TestClient(create_app(settings, instagram_service=instagram))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, settings):
    return make_client(settings)


@pytest.fixture
def auth_headers():
    return {"X-App-Password": APP_PASSWORD}


@pytest.fixture
def jpeg_bytes():
    def _make(width=640, height=320, fmt="JPEG"):
        buf = io.BytesIO()
        Image.new("RGB", (width, height), color=(30, 120, 200)).save(buf, format=fmt)
        return buf.getvalue()
    return _make
