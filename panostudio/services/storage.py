import os
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple
from urllib.parse import unquote, urlparse
from botocore.exceptions import BotoCoreError, ClientError
from panostudio.config import logger


class StorageError(Exception):
    """
    Raised when an object storage call (upload, delete, list) fails.
    """
    pass


class StorageStrategy(ABC):
    """
    Contract shared by every object storage provider. Objects live in named
    buckets and are addressed by a key; every stored object has a stable
    public URL of the form ``<public_base>/<bucket>/<key>``.
    """
    def __init__(self, public_base: str):
        self.public_base = public_base.rstrip("/")

    @abstractmethod
    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """
        Store ``data`` under ``bucket``/``key`` and return its public URL.

        :param bucket: Target bucket name (e.g. 'raw-panoramas').
        :type bucket: str
        :param key: Object path inside the bucket (e.g. '1718000000-pano.jpg').
        :type key: str
        :param data: Object content.
        :type data: bytes
        :param content_type: MIME type stored with the object.
        :type content_type: str
        :return: The public URL of the stored object.
        :rtype: str
        :raises StorageError: If the provider rejects the upload.
        """
        pass

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        pass

    @abstractmethod
    def list(self, bucket: str, prefix: str = "") -> List[str]:
        pass

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self.public_base}/{bucket}/{key.lstrip('/')}"


class S3Storage(StorageStrategy):
    """
    StorageStrategy for Amazon S3 (or any S3-compatible endpoint).
    """
    def __init__(self, client, public_base: str):
        """
        :param client: A boto3 s3 client.
        :type client: botocore.client.S3
        :param public_base: URL prefix under which buckets are publicly readable.
        :type public_base: str
        """
        super().__init__(public_base)
        self.client = client

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="max-age=3600",
            )
            logger.info(f"Uploaded s3://{bucket}/{key}")
            return self.public_url(bucket, key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"AWS S3 error while uploading {bucket}/{key}: {e}", exc_info=True)
            raise StorageError(f"Upload to bucket '{bucket}' failed.") from e

    def delete(self, bucket: str, key: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
            logger.info(f"Deleted s3://{bucket}/{key}")
        except (BotoCoreError, ClientError) as e:
            logger.error(f"AWS S3 error while deleting {bucket}/{key}: {e}", exc_info=True)
            raise StorageError(f"Delete from bucket '{bucket}' failed.") from e

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        try:
            response = self.client.list_objects_v2(Bucket=bucket, Prefix=prefix)
            return [obj["Key"] for obj in response.get("Contents", [])]
        except (BotoCoreError, ClientError) as e:
            logger.error(f"AWS S3 error while listing {bucket}/{prefix}: {e}", exc_info=True)
            raise StorageError(f"Listing bucket '{bucket}' failed.") from e


class LocalStorage(StorageStrategy):
    """
    Filesystem StorageStrategy for local development; objects are served back
    by the ``/media/{bucket}/{key}`` route.
    """
    def __init__(self, base_dir: str, public_base: str):
        super().__init__(public_base)
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def path_for(self, bucket: str, key: str) -> str:
        root = os.path.abspath(os.path.join(self.base_dir, bucket))
        path = os.path.abspath(os.path.join(root, key))
        if not path.startswith(root + os.sep):
            raise StorageError(f"Invalid object key: {key}")
        return path

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        try:
            path = self.path_for(bucket, key)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
            logger.info(f"Stored {bucket}/{key} on local disk")
            return self.public_url(bucket, key)
        except OSError as e:
            logger.error(f"IO error while storing {bucket}/{key}: {e}", exc_info=True)
            raise StorageError(f"Upload to bucket '{bucket}' failed.") from e

    def delete(self, bucket: str, key: str) -> None:
        path = self.path_for(bucket, key)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.error(f"IO error while deleting {bucket}/{key}: {e}", exc_info=True)
            raise StorageError(f"Delete from bucket '{bucket}' failed.") from e

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        root = os.path.join(self.base_dir, bucket)
        keys = []
        for dirpath, _, filenames in os.walk(root):
            for filename in filenames:
                key = os.path.relpath(os.path.join(dirpath, filename), root).replace(os.sep, "/")
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)


class StorageService:
    """
    Front service for object storage, delegating to a StorageStrategy.
    """
    def __init__(self, strategy: StorageStrategy, buckets: Optional[List[str]] = None):
        """
        :param strategy: The concrete storage implementation.
        :type strategy: StorageStrategy
        :param buckets: Bucket names this deployment knows about; used to map
                        public URLs back to storage paths.
        :type buckets: Optional[List[str]]
        """
        self._strategy = strategy
        self.buckets = list(buckets or [])

    @property
    def strategy(self) -> StorageStrategy:
        return self._strategy

    def upload(self, bucket: str, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        return self._strategy.upload(bucket, key, data, content_type)

    def public_url(self, bucket: str, key: str) -> str:
        return self._strategy.public_url(bucket, key)

    def delete(self, bucket: str, key: str) -> None:
        self._strategy.delete(bucket, key)

    def list_files(self, bucket: str, prefix: str = "") -> List[str]:
        return self._strategy.list(bucket, prefix)

    def path_from_url(self, url: Optional[str]) -> Optional[Tuple[str, str]]:
        """
        Derive ``(bucket, key)`` from a stored public URL.

        :param url: A URL previously returned by :meth:`upload`.
        :type url: Optional[str]
        :return: The bucket and key, or None when the URL is not one of ours.
        :rtype: Optional[Tuple[str, str]]
        """
        if not url:
            return None
        base = self._strategy.public_base + "/"
        candidate = url.split("?", 1)[0]
        if candidate.startswith(base):
            rest = candidate[len(base):]
        else:
            # tolerate host differences (e.g. CDN in front of the bucket)
            rest = urlparse(candidate).path.lstrip("/")
            base_path = urlparse(self._strategy.public_base).path.strip("/")
            if base_path and rest.startswith(base_path + "/"):
                rest = rest[len(base_path) + 1:]
        bucket, _, key = unquote(rest).partition("/")
        if not bucket or not key:
            return None
        if self.buckets and bucket not in self.buckets:
            return None
        return bucket, key
