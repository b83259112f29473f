import os
import logging
from typing import Optional
import boto3
from botocore.config import Config as BotoConfig
from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("panostudio")

GRAPH_VERSION_DEFAULT = "v21.0"
DEFAULT_CAPTION = "Walking Forward panorama"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """
    Process-wide configuration, gathered once from the environment and passed
    explicitly to every service at construction time.
    """
    database_url: str = "sqlite:///data/panostudio.db"

    # Auth gate
    app_password: Optional[str] = None
    app_user_id: str = "admin"

    # Object storage
    storage_backend: str = "local"
    local_storage_dir: str = "data/storage"
    public_base_url: str = "http://localhost:8000"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "eu-west-3"
    s3_public_base_url: Optional[str] = None
    bucket_raw: str = "raw-panoramas"
    bucket_processed: str = "processed-images"
    bucket_optimized: str = "optimized-web"

    # Instagram Graph API
    instagram_access_token: Optional[str] = None
    instagram_business_account_id: Optional[str] = None
    instagram_graph_version: str = GRAPH_VERSION_DEFAULT
    instagram_carousel_enabled: bool = True
    token_refresh_threshold_days: int = 7

    # Workflow
    delete_mode: str = "archive"
    default_caption: str = DEFAULT_CAPTION

    @property
    def use_s3(self) -> bool:
        return self.storage_backend == "s3"

    @property
    def graph_api_url(self) -> str:
        return f"https://graph.facebook.com/{self.instagram_graph_version}"

    @property
    def storage_public_base(self) -> str:
        """Prefix shared by every public asset URL (``<base>/<bucket>/<key>``)."""
        if self.use_s3:
            return (self.s3_public_base_url or f"https://s3.{self.aws_region}.amazonaws.com").rstrip("/")
        return f"{self.public_base_url.rstrip('/')}/media"

    @classmethod
    def from_env(cls) -> "Settings":
        has_aws = bool(os.environ.get("AWS_ACCESS_KEY_ID") and os.environ.get("AWS_SECRET_ACCESS_KEY"))
        backend = os.environ.get("STORAGE_BACKEND", "s3" if has_aws else "local").strip().lower()
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.model_fields["database_url"].default),
            app_password=os.environ.get("APP_PASSWORD") or None,
            app_user_id=os.environ.get("APP_USER_ID", "admin"),
            storage_backend=backend,
            local_storage_dir=os.environ.get("LOCAL_STORAGE_DIR", "data/storage"),
            public_base_url=os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000"),
            aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
            aws_region=os.environ.get("AWS_S3_REGION", "eu-west-3"),
            s3_public_base_url=os.environ.get("S3_PUBLIC_BASE_URL") or None,
            bucket_raw=os.environ.get("STORAGE_BUCKET_RAW", "raw-panoramas"),
            bucket_processed=os.environ.get("STORAGE_BUCKET_PROCESSED", "processed-images"),
            bucket_optimized=os.environ.get("STORAGE_BUCKET_OPTIMIZED", "optimized-web"),
            instagram_access_token=os.environ.get("INSTAGRAM_ACCESS_TOKEN") or None,
            instagram_business_account_id=os.environ.get("INSTAGRAM_BUSINESS_ACCOUNT_ID") or None,
            instagram_graph_version=os.environ.get("INSTAGRAM_GRAPH_VERSION", GRAPH_VERSION_DEFAULT),
            instagram_carousel_enabled=_env_bool("INSTAGRAM_CAROUSEL_ENABLED", True),
            token_refresh_threshold_days=int(os.environ.get("TOKEN_REFRESH_THRESHOLD_DAYS", "7")),
            delete_mode=os.environ.get("DELETE_MODE", "archive").strip().lower(),
            default_caption=os.environ.get("DEFAULT_CAPTION", DEFAULT_CAPTION),
        )


def build_s3_client(settings: Settings):
    """Build the boto3 S3 client used by the S3 storage strategy."""
    client = boto3.client(
        "s3",
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name=settings.aws_region,
        config=BotoConfig(signature_version="s3v4")
    )
    logger.info(f"S3 configured for StorageService: region={settings.aws_region}")
    return client
