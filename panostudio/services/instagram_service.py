import time
import requests
from typing import Any, Dict, List, Optional
from panostudio.config import logger

INSTAGRAM_GRAPH_URL = "https://graph.instagram.com"
CAROUSEL_MAX_ITEMS = 10


class InstagramAPIError(Exception):
    """Business exception for failures talking to the Meta Graph API."""
    pass


class InstagramService:
    """
    Facade isolating the application from the Instagram Graph API: media
    container creation, container polling, publication and token endpoints.
    """
    def __init__(
        self,
        base_url: str,
        instagram_url: str = INSTAGRAM_GRAPH_URL,
        poll_interval: float = 1.5,
        max_polls: int = 10,
        timeout: int = 15,
    ):
        """
        :param base_url: Root URL of the Facebook Graph API (e.g. https://graph.facebook.com/v21.0).
        :type base_url: str
        :param instagram_url: Root URL of the Instagram Graph API, used for token refresh.
        :type instagram_url: str
        :param poll_interval: Seconds between two container status checks.
        :type poll_interval: float
        :param max_polls: Status checks before giving up on a container.
        :type max_polls: int
        :param timeout: Per-request timeout in seconds.
        :type timeout: int
        """
        self.base_url = base_url.rstrip("/")
        self.instagram_url = instagram_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout

    @staticmethod
    def _payload(resp: requests.Response, default_error: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code != 200 or (isinstance(data, dict) and data.get("error")):
            message = None
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                message = data["error"].get("message")
            raise InstagramAPIError(message or f"{default_error} (HTTP {resp.status_code})")
        return data if isinstance(data, dict) else {}

    def _create_container(self, user_id: str, token: str, fields: Dict[str, str]) -> str:
        resp = requests.post(
            f"{self.base_url}/{user_id}/media",
            data={**fields, "access_token": token},
            timeout=self.timeout,
        )
        data = self._payload(resp, "Failed to create Instagram media container")
        container_id = data.get("id")
        if not container_id:
            raise InstagramAPIError("Instagram response missing creation ID")
        logger.info(f"Container created: {container_id}. Waiting for Meta to process it...")
        return container_id

    def _wait_for_container(self, container_id: str, token: str) -> None:
        status_url = f"{self.base_url}/{container_id}"
        for attempt in range(self.max_polls):
            resp = requests.get(status_url, params={
                "fields": "status_code,status",
                "access_token": token
            }, timeout=self.timeout)
            data = self._payload(resp, "Failed to check Instagram media container status")
            status_code = data.get("status_code", "UNKNOWN")
            logger.info(f"Container {container_id} status: {status_code} (attempt {attempt + 1}/{self.max_polls})")

            if status_code == "FINISHED":
                return
            if status_code == "ERROR":
                raise InstagramAPIError("Instagram media container reported an error status")
            time.sleep(self.poll_interval)

        raise InstagramAPIError("Timed out waiting for Instagram media container to finish")

    def _publish_container(self, user_id: str, token: str, creation_id: str) -> str:
        resp = requests.post(
            f"{self.base_url}/{user_id}/media_publish",
            data={"creation_id": creation_id, "access_token": token},
            timeout=self.timeout,
        )
        data = self._payload(resp, "Failed to publish Instagram media")
        post_id = data.get("id")
        if not post_id:
            raise InstagramAPIError("Instagram response missing published media ID")
        return post_id

    def publish_image(self, user_id: str, token: str, image_url: str, caption: str) -> str:
        """
        Publish a single image: create the container, poll until Meta has
        finished processing it, then publish.

        :param user_id: Target Instagram business account id.
        :type user_id: str
        :param token: Access token.
        :type token: str
        :param image_url: Public URL Meta's servers can fetch.
        :type image_url: str
        :param caption: Post caption.
        :type caption: str
        :return: The Instagram id of the published post.
        :rtype: str
        :raises InstagramAPIError: On any refusal, timeout or network failure.
        """
        try:
            container_id = self._create_container(user_id, token, {"image_url": image_url, "caption": caption})
            self._wait_for_container(container_id, token)
            return self._publish_container(user_id, token, container_id)
        except requests.RequestException as e:
            logger.error(f"Network error while talking to the Graph API: {e}", exc_info=True)
            raise InstagramAPIError("Network timeout or unreachable Graph API.") from e

    def publish_carousel(self, user_id: str, token: str, image_urls: List[str], caption: str) -> str:
        """
        Publish an ordered carousel: one child container per image
        (``is_carousel_item``), then a CAROUSEL container referencing them.

        :param image_urls: 2 to 10 public image URLs, in display order.
        :type image_urls: List[str]
        :return: The Instagram id of the published post.
        :rtype: str
        :raises InstagramAPIError: On an invalid item count, any refusal, timeout or network failure.
        """
        if not 2 <= len(image_urls) <= CAROUSEL_MAX_ITEMS:
            raise InstagramAPIError(f"A carousel needs between 2 and {CAROUSEL_MAX_ITEMS} images, got {len(image_urls)}.")
        try:
            children = []
            for url in image_urls:
                child_id = self._create_container(user_id, token, {"image_url": url, "is_carousel_item": "true"})
                self._wait_for_container(child_id, token)
                children.append(child_id)

            carousel_id = self._create_container(user_id, token, {
                "media_type": "CAROUSEL",
                "children": ",".join(children),
                "caption": caption,
            })
            self._wait_for_container(carousel_id, token)
            return self._publish_container(user_id, token, carousel_id)
        except requests.RequestException as e:
            logger.error(f"Network error while talking to the Graph API: {e}", exc_info=True)
            raise InstagramAPIError("Network timeout or unreachable Graph API.") from e

    def validate_token(self, token: Optional[str]) -> bool:
        """Identity check against ``/me``; an invalid token is a normal False, never an exception."""
        if not token:
            return False
        try:
            resp = requests.get(f"{self.base_url}/me", params={
                "fields": "id",
                "access_token": token
            }, timeout=self.timeout)
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Token validation call failed: {e}")
            return False
        if resp.status_code != 200 or not isinstance(data, dict) or data.get("error"):
            return False
        return bool(data.get("id"))

    def fetch_profile(self, token: str) -> Dict[str, Any]:
        try:
            resp = requests.get(f"{self.base_url}/me", params={
                "fields": "id,name,email",
                "access_token": token
            }, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Network error on fetch_profile: {e}", exc_info=True)
            raise InstagramAPIError("The Facebook server is unreachable.") from e
        data = self._payload(resp, "Graph API error")
        return {"id": data.get("id"), "name": data.get("name"), "email": data.get("email")}

    def refresh_token(self, token: str) -> Dict[str, Any]:
        """
        Exchange a valid long-lived token for a refreshed one.

        :return: The raw API payload, containing ``access_token`` and usually ``expires_in``.
        :rtype: Dict[str, Any]
        :raises InstagramAPIError: If the API refuses the token or omits the new one.
        """
        try:
            resp = requests.get(f"{self.instagram_url}/refresh_access_token", params={
                "grant_type": "ig_refresh_token",
                "access_token": token
            }, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Network error on refresh_token: {e}", exc_info=True)
            raise InstagramAPIError("The Instagram server is unreachable.") from e
        data = self._payload(resp, "Instagram API error")
        if not data.get("access_token"):
            raise InstagramAPIError("No access token in response")
        return data
