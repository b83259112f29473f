from unittest.mock import MagicMock
import pytest
from botocore.exceptions import ClientError

from panostudio.services.storage import LocalStorage, S3Storage, StorageError, StorageService


def test_local_upload_and_public_url(storage):
    url = storage.upload("raw-panoramas", "admin/pano.jpg", b"data")
    assert url == "http://testserver/media/raw-panoramas/admin/pano.jpg"
    with open(storage.strategy.path_for("raw-panoramas", "admin/pano.jpg"), "rb") as f:
        assert f.read() == b"data"
    assert storage.list_files("raw-panoramas", prefix="admin/") == ["admin/pano.jpg"]


def test_local_delete(storage):
    storage.upload("optimized-web", "a.jpg", b"x")
    storage.delete("optimized-web", "a.jpg")
    assert storage.list_files("optimized-web") == []
    # deleting a missing object is not an error
    storage.delete("optimized-web", "a.jpg")


def test_local_rejects_path_traversal(storage):
    with pytest.raises(StorageError):
        storage.upload("raw-panoramas", "../../etc/passwd", b"x")


def test_path_from_url(storage):
    url = storage.upload("processed-images", "admin/2024/pano final.jpg", b"x")
    assert storage.path_from_url(url) == ("processed-images", "admin/2024/pano final.jpg")
    assert storage.path_from_url(url + "?v=3") == ("processed-images", "admin/2024/pano final.jpg")
    # host differences are tolerated
    assert storage.path_from_url("https://cdn.example.com/media/raw-panoramas/k.jpg") == ("raw-panoramas", "k.jpg")


@pytest.mark.parametrize("url", [None, "", "http://testserver/media/unknown-bucket/k.jpg", "http://testserver/media/raw-panoramas"])
def test_path_from_url_rejects_foreign_urls(storage, url):
    assert storage.path_from_url(url) is None


def test_s3_upload_sets_content_type():
    client = MagicMock()
    service = StorageService(S3Storage(client, "https://s3.eu-west-3.amazonaws.com"), ["raw-panoramas"])

    url = service.upload("raw-panoramas", "pano.png", b"img", content_type="image/png")

    assert url == "https://s3.eu-west-3.amazonaws.com/raw-panoramas/pano.png"
    client.put_object.assert_called_once()
    kwargs = client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "raw-panoramas"
    assert kwargs["Key"] == "pano.png"
    assert kwargs["ContentType"] == "image/png"


def test_s3_errors_become_storage_errors():
    client = MagicMock()
    client.delete_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "nope"}}, "DeleteObject")
    strategy = S3Storage(client, "https://s3.eu-west-3.amazonaws.com")
    with pytest.raises(StorageError):
        strategy.delete("raw-panoramas", "pano.jpg")


def test_s3_list():
    client = MagicMock()
    client.list_objects_v2.return_value = {"Contents": [{"Key": "a.jpg"}, {"Key": "b.jpg"}]}
    assert S3Storage(client, "https://cdn").list("raw-panoramas") == ["a.jpg", "b.jpg"]


def test_local_storage_creates_base_dir(tmp_path):
    LocalStorage(str(tmp_path / "nested" / "store"), "http://x/media")
    assert (tmp_path / "nested" / "store").is_dir()
