from unittest.mock import MagicMock, patch
import pytest
import requests

from panostudio.services.instagram_service import InstagramAPIError, InstagramService

GRAPH = "https://graph.facebook.com/v21.0"


def _resp(payload, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


@pytest.fixture
def service():
    return InstagramService(GRAPH, poll_interval=0, max_polls=3)


def test_publish_image_creates_polls_and_publishes(service):
    with patch("panostudio.services.instagram_service.requests.post") as post, \
         patch("panostudio.services.instagram_service.requests.get") as get:
        post.side_effect = [_resp({"id": "container-1"}), _resp({"id": "post-1"})]
        get.side_effect = [_resp({"status_code": "IN_PROGRESS"}), _resp({"status_code": "FINISHED"})]

        post_id = service.publish_image("1784", "tok", "https://cdn/pano.jpg", "Hello")

    assert post_id == "post-1"
    create_call, publish_call = post.call_args_list
    assert create_call.args[0] == f"{GRAPH}/1784/media"
    assert create_call.kwargs["data"] == {"image_url": "https://cdn/pano.jpg", "caption": "Hello", "access_token": "tok"}
    assert publish_call.args[0] == f"{GRAPH}/1784/media_publish"
    assert publish_call.kwargs["data"]["creation_id"] == "container-1"
    assert get.call_count == 2


def test_publish_image_surfaces_graph_error_message(service):
    with patch("panostudio.services.instagram_service.requests.post") as post:
        post.return_value = _resp({"error": {"message": "Invalid parameter"}}, status_code=400)
        with pytest.raises(InstagramAPIError, match="Invalid parameter"):
            service.publish_image("1784", "tok", "https://cdn/pano.jpg", "Hello")


def test_container_error_status(service):
    with patch("panostudio.services.instagram_service.requests.post") as post, \
         patch("panostudio.services.instagram_service.requests.get") as get:
        post.return_value = _resp({"id": "container-1"})
        get.return_value = _resp({"status_code": "ERROR"})
        with pytest.raises(InstagramAPIError):
            service.publish_image("1784", "tok", "https://cdn/pano.jpg", "Hello")
    # nothing published
    assert post.call_count == 1


def test_container_poll_times_out(service):
    with patch("panostudio.services.instagram_service.requests.post") as post, \
         patch("panostudio.services.instagram_service.requests.get") as get:
        post.return_value = _resp({"id": "container-1"})
        get.return_value = _resp({"status_code": "IN_PROGRESS"})
        with pytest.raises(InstagramAPIError, match="Timed out"):
            service.publish_image("1784", "tok", "https://cdn/pano.jpg", "Hello")
    assert get.call_count == 3


def test_network_failure_becomes_api_error(service):
    with patch("panostudio.services.instagram_service.requests.post") as post:
        post.side_effect = requests.ConnectionError("unreachable")
        with pytest.raises(InstagramAPIError):
            service.publish_image("1784", "tok", "https://cdn/pano.jpg", "Hello")


def test_publish_carousel(service):
    urls = ["https://cdn/p1.jpg", "https://cdn/p2.jpg", "https://cdn/p3.jpg"]
    with patch("panostudio.services.instagram_service.requests.post") as post, \
         patch("panostudio.services.instagram_service.requests.get") as get:
        post.side_effect = [
            _resp({"id": "child-1"}), _resp({"id": "child-2"}), _resp({"id": "child-3"}),
            _resp({"id": "carousel-1"}), _resp({"id": "post-9"}),
        ]
        get.return_value = _resp({"status_code": "FINISHED"})

        assert service.publish_carousel("1784", "tok", urls, "Three panels") == "post-9"

    calls = post.call_args_list
    for call, url in zip(calls[:3], urls):
        assert call.kwargs["data"]["image_url"] == url
        assert call.kwargs["data"]["is_carousel_item"] == "true"
    carousel = calls[3].kwargs["data"]
    assert carousel["media_type"] == "CAROUSEL"
    assert carousel["children"] == "child-1,child-2,child-3"
    assert carousel["caption"] == "Three panels"
    assert calls[4].kwargs["data"]["creation_id"] == "carousel-1"


@pytest.mark.parametrize("count", [1, 11])
def test_publish_carousel_item_count(service, count):
    with patch("panostudio.services.instagram_service.requests.post") as post:
        with pytest.raises(InstagramAPIError):
            service.publish_carousel("1784", "tok", [f"https://cdn/{i}.jpg" for i in range(count)], "c")
    post.assert_not_called()


def test_validate_token(service):
    with patch("panostudio.services.instagram_service.requests.get") as get:
        get.return_value = _resp({"id": "42"})
        assert service.validate_token("good") is True
        assert get.call_args.kwargs["params"] == {"fields": "id", "access_token": "good"}

        get.return_value = _resp({"error": {"message": "Invalid OAuth access token"}}, status_code=400)
        assert service.validate_token("bad") is False

        get.side_effect = requests.Timeout("slow")
        assert service.validate_token("slow") is False


def test_validate_empty_token_makes_no_call(service):
    with patch("panostudio.services.instagram_service.requests.get") as get:
        assert service.validate_token("") is False
        assert service.validate_token(None) is False
    get.assert_not_called()


def test_fetch_profile(service):
    with patch("panostudio.services.instagram_service.requests.get") as get:
        get.return_value = _resp({"id": "42", "name": "Walking Forward"})
        assert service.fetch_profile("tok") == {"id": "42", "name": "Walking Forward", "email": None}


def test_refresh_token(service):
    with patch("panostudio.services.instagram_service.requests.get") as get:
        get.return_value = _resp({"access_token": "new", "token_type": "bearer", "expires_in": 5183944})
        data = service.refresh_token("old")

    assert data["access_token"] == "new"
    assert get.call_args.args[0] == "https://graph.instagram.com/refresh_access_token"
    assert get.call_args.kwargs["params"] == {"grant_type": "ig_refresh_token", "access_token": "old"}


def test_refresh_token_without_new_token(service):
    with patch("panostudio.services.instagram_service.requests.get") as get:
        get.return_value = _resp({"token_type": "bearer"})
        with pytest.raises(InstagramAPIError, match="No access token"):
            service.refresh_token("old")
