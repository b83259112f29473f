"""
Instagram publish workflow for a stored panorama.

The Instagram post is the source of truth: once the Graph API has accepted
it, failing to write the history row or the local status is logged and
never turns the outcome into a failure.
"""

from typing import List, Optional, Tuple

from panostudio.config import Settings, logger
from panostudio.lifecycle import check_publishable
from panostudio.models import PanoramaImage, PublishResult
from panostudio.repository import PanoramaNotFound, PanoramaRepository, RepositoryError
from panostudio.security.token_manager import TokenManager
from panostudio.services.instagram_service import CAROUSEL_MAX_ITEMS, InstagramAPIError, InstagramService
from panostudio.utils import utcnow


class PublishNotConfigured(Exception):
    """The access token or the business account id is missing."""
    pass


class NoUsableAsset(Exception):
    """The panorama has no image URL and no panel that could be posted."""
    pass


class PublishOrchestrator:
    def __init__(
        self,
        repository: PanoramaRepository,
        tokens: TokenManager,
        instagram: InstagramService,
        settings: Settings,
    ):
        self.repository = repository
        self.tokens = tokens
        self.instagram = instagram
        self.settings = settings

    def resolve_caption(self, record: PanoramaImage, override: Optional[str]) -> str:
        for candidate in (override, record.description, record.title):
            if candidate and candidate.strip():
                return candidate
        return self.settings.default_caption

    def resolve_assets(self, record: PanoramaImage) -> Tuple[Optional[str], List[str]]:
        """
        :return: The best single image URL (processed, preview, thumbnail,
                 original) and the panel URLs in ``panel_order``.
        :rtype: Tuple[Optional[str], List[str]]
        """
        image_url = record.processed_url or record.preview_url or record.thumbnail_url or record.original_url
        panel_urls = [p.panel_url for p in sorted(record.panels or [], key=lambda p: p.panel_order)]
        return image_url or None, panel_urls

    def _check_configured(self) -> None:
        missing = []
        if self.tokens.get_token_info() is None:
            missing.append("INSTAGRAM_ACCESS_TOKEN")
        if not self.settings.instagram_business_account_id:
            missing.append("INSTAGRAM_BUSINESS_ACCOUNT_ID")
        if missing:
            raise PublishNotConfigured(f"Instagram integration not configured. Set {' and '.join(missing)}.")

    def publish(self, image_id: str, caption: Optional[str] = None, posted_by: Optional[str] = None) -> PublishResult:
        """
        Post a panorama to Instagram and record the attempt.

        :param image_id: Panorama to publish.
        :type image_id: str
        :param caption: Optional caption override.
        :type caption: Optional[str]
        :param posted_by: Acting user id, stored in the history row.
        :type posted_by: Optional[str]
        :return: ``success`` with the Instagram post id, or the API error.
        :rtype: PublishResult
        :raises PanoramaNotFound: If the panorama does not exist.
        :raises InvalidTransition: If the panorama is archived.
        :raises PublishNotConfigured: If the token or business account id is missing.
        :raises NoUsableAsset: If there is nothing to post.
        """
        record = self.repository.get_by_id(image_id, include_panels=True)
        if record is None:
            raise PanoramaNotFound(image_id)
        check_publishable(record.status)

        caption_text = self.resolve_caption(record, caption)
        image_url, panel_urls = self.resolve_assets(record)

        # neither precondition reaches the Graph API
        self._check_configured()
        if not image_url and not panel_urls:
            raise NoUsableAsset("No usable image URL available for Instagram")

        token = self.tokens.get_access_token()
        account_id = self.settings.instagram_business_account_id

        try:
            if self.settings.instagram_carousel_enabled and len(panel_urls) >= 2:
                if len(panel_urls) > CAROUSEL_MAX_ITEMS:
                    logger.warning(f"Panorama {image_id} has {len(panel_urls)} panels, posting the first {CAROUSEL_MAX_ITEMS}")
                logger.info(f"Publishing panorama {image_id} as a carousel of {min(len(panel_urls), CAROUSEL_MAX_ITEMS)} panels")
                post_id = self.instagram.publish_carousel(account_id, token, panel_urls[:CAROUSEL_MAX_ITEMS], caption_text)
            else:
                logger.info(f"Publishing panorama {image_id} as a single image")
                post_id = self.instagram.publish_image(account_id, token, image_url or panel_urls[0], caption_text)
            result = PublishResult(success=True, post_id=post_id)
        except InstagramAPIError as e:
            logger.error(f"Instagram publish failed for panorama {image_id}: {e}", exc_info=True)
            result = PublishResult(success=False, error=str(e))

        now = utcnow()
        try:
            self.repository.record_post_history(
                panorama_id=record.id,
                caption=caption_text,
                status="posted" if result.success else "failed",
                instagram_post_id=result.post_id,
                posted_by=posted_by,
                posted_at=now,
                result_payload=result.model_dump(mode="json"),
                error_message=result.error,
            )
        except RepositoryError as e:
            logger.error(f"Failed to log Instagram history for panorama {image_id}: {e}", exc_info=True)

        if result.success:
            try:
                updated = self.repository.mark_posted(record.id, result.post_id, now)
            except RepositoryError:
                updated = False
            if not updated:
                logger.error(f"Panorama {image_id} was posted as {result.post_id} but its status could not be updated")

        return result
