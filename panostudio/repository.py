"""
Persistence for panorama records and the rows hanging off them.

Multi-step writes (save + tags, panel replace, hard delete) run as separate
commits with no rollback of the steps already done; concurrent writers on the
same panorama are last-write-wins.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panostudio.config import logger
from panostudio.lifecycle import (
    PanoramaStatus, check_edit_transition, check_restore,
)
from panostudio.models import ImagesPage, PanelIn, PanoramaImage, PanoramaPanel, PanoramaSave
from panostudio.services.storage import StorageError, StorageService
from panostudio.tables import (
    InstagramPostHistoryRow, PanoramaImageRow, PanoramaPanelRow,
)
from panostudio.tags import TagResolver
from panostudio.utils import utcnow


DEFAULT_PAGE_SIZE = 24

_ASSET_FIELDS = ("original_url", "processed_url", "thumbnail_url", "preview_url")


class RepositoryError(Exception):
    """The relational store failed unexpectedly."""
    pass


class PanoramaNotFound(Exception):
    def __init__(self, image_id: str):
        super().__init__(f"Image not found: {image_id}")
        self.image_id = image_id


class NotImageOwner(Exception):
    """The acting user does not own the panorama it tried to update."""
    def __init__(self, image_id: str, user_id: str):
        super().__init__(f"User {user_id} does not own image {image_id}")
        self.image_id = image_id
        self.user_id = user_id


class PanoramaRepository:
    def __init__(self, session: Session, tags: TagResolver, storage: Optional[StorageService] = None):
        self.session = session
        self.tags = tags
        self.storage = storage

    # --- Reads ---

    def _to_model(self, row: PanoramaImageRow, include_panels: bool = False) -> PanoramaImage:
        lookup = self.tags.names_for_image(row.id)
        record = PanoramaImage(
            id=row.id,
            user_id=row.user_id,
            original_url=row.original_url,
            processed_url=row.processed_url,
            thumbnail_url=row.thumbnail_url,
            preview_url=row.preview_url,
            panel_count=row.panel_count,
            title=row.title or "",
            location_name=row.location_name or "",
            latitude=row.latitude,
            longitude=row.longitude,
            description=row.description or "",
            date_taken=row.date_taken,
            status=row.status,
            adjustments=row.adjustments,
            created_at=row.created_at,
            updated_at=row.updated_at,
            posted_at=row.posted_at,
            archived_at=row.archived_at,
            instagram_post_id=row.instagram_post_id,
            tags=lookup.names,
        )
        if include_panels:
            record.panels = self.get_panels(row.id)
        return record

    def _row(self, image_id: str) -> Optional[PanoramaImageRow]:
        try:
            return self.session.get(PanoramaImageRow, image_id)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching image {image_id}: {e}", exc_info=True)
            raise RepositoryError("Failed to fetch image metadata") from e

    def get_by_id(self, image_id: str, include_panels: bool = False) -> Optional[PanoramaImage]:
        row = self._row(image_id)
        if row is None:
            return None
        return self._to_model(row, include_panels)

    def get_by_url(self, url: str) -> Optional[PanoramaImage]:
        """Match on original_url or processed_url; no match is the normal answer for a fresh upload."""
        try:
            row = self.session.execute(
                select(PanoramaImageRow)
                .where((PanoramaImageRow.original_url == url) | (PanoramaImageRow.processed_url == url))
                .order_by(PanoramaImageRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching image by URL: {e}", exc_info=True)
            raise RepositoryError("Failed to fetch image metadata") from e
        if row is None:
            logger.debug(f"No image stored for URL {url}")
            return None
        return self._to_model(row)

    def list_active(self) -> List[PanoramaImage]:
        rows = self._select(
            select(PanoramaImageRow)
            .where(PanoramaImageRow.status != PanoramaStatus.ARCHIVED.value)
            .order_by(PanoramaImageRow.date_taken.desc(), PanoramaImageRow.id.desc())
        )
        return [self._to_model(row) for row in rows]

    def list_active_page(self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> ImagesPage:
        return self._page(PanoramaImageRow.status != PanoramaStatus.ARCHIVED.value, limit, offset)

    def list_archived_page(self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> ImagesPage:
        return self._page(PanoramaImageRow.status == PanoramaStatus.ARCHIVED.value, limit, offset)

    def _page(self, condition, limit: int, offset: int) -> ImagesPage:
        limit = max(1, limit)
        offset = max(0, offset)
        rows = self._select(
            select(PanoramaImageRow)
            .where(condition)
            .order_by(PanoramaImageRow.date_taken.desc(), PanoramaImageRow.id.desc())
            .offset(offset)
            .limit(limit)
        )
        images = [self._to_model(row) for row in rows]
        # No count query: a full page is reported as "maybe more"
        return ImagesPage(images=images, has_more=len(images) == limit)

    def get_latest(self, include_panels: bool = False) -> Optional[PanoramaImage]:
        rows = self._select(
            select(PanoramaImageRow)
            .where(PanoramaImageRow.status != PanoramaStatus.ARCHIVED.value)
            .order_by(PanoramaImageRow.created_at.desc())
            .limit(1)
        )
        return self._to_model(rows[0], include_panels) if rows else None

    def list_locations(self) -> List[Dict[str, Any]]:
        rows = self._select(
            select(PanoramaImageRow)
            .where(PanoramaImageRow.status != PanoramaStatus.ARCHIVED.value)
            .where(PanoramaImageRow.latitude.is_not(None))
            .where(PanoramaImageRow.longitude.is_not(None))
            .order_by(PanoramaImageRow.date_taken.desc())
        )
        return [
            {
                "id": row.id,
                "title": row.title,
                "latitude": row.latitude,
                "longitude": row.longitude,
                "location_name": row.location_name,
                "thumbnail_url": row.thumbnail_url,
                "date_taken": row.date_taken.isoformat() if row.date_taken else None,
            }
            for row in rows
        ]

    def _select(self, stmt) -> List[PanoramaImageRow]:
        try:
            return list(self.session.execute(stmt).scalars())
        except SQLAlchemyError as e:
            logger.error(f"Error listing images: {e}", exc_info=True)
            raise RepositoryError("Failed to list images") from e

    # --- Writes ---

    def save(self, record: PanoramaSave, user_id: str) -> Optional[PanoramaImage]:
        """
        Insert or update a panorama, then rewrite its tags, then return the
        re-fetched record. Returns None (after logging) when any step fails;
        steps already committed stay committed.

        :raises NotImageOwner: ``user_id`` does not own the record being updated
        :raises InvalidTransition: the status change is not an edit transition
        """
        has_id = bool(record.id and record.id.strip())
        existing = self._row(record.id) if has_id else None
        data = record.model_dump(exclude={"id", "tags"})
        data["status"] = PanoramaStatus(data["status"]).value
        now = utcnow()

        if existing is not None:
            if existing.user_id != user_id:
                logger.warning(f"User {user_id} tried to update image {existing.id} owned by another user")
                raise NotImageOwner(existing.id, user_id)
            check_edit_transition(existing.status, data["status"])
            row = existing
            for field, value in data.items():
                setattr(row, field, value)
            row.updated_at = now
        else:
            check_edit_transition(PanoramaStatus.DRAFT, data["status"])
            row = PanoramaImageRow(**data, user_id=user_id, created_at=now, updated_at=now)
            self.session.add(row)

        try:
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error saving image metadata: {e}", exc_info=True)
            self.session.rollback()
            return None
        logger.info(f"Image {row.id} {'updated' if existing is not None else 'created'} by {user_id}")

        if record.tags is not None:
            try:
                self.tags.replace_for_image(row.id, record.tags)
            except SQLAlchemyError as e:
                logger.error(f"Image {row.id} saved but its tags could not be written: {e}", exc_info=True)
                self.session.rollback()
                return None

        try:
            return self.get_by_id(row.id)
        except RepositoryError:
            return None

    def archive(self, image_id: str) -> bool:
        row = self._row(image_id)
        if row is None:
            return False
        now = utcnow()
        row.status = PanoramaStatus.ARCHIVED.value
        row.archived_at = now
        row.updated_at = now
        return self._commit(f"archiving image {image_id}")

    def restore(self, image_id: str) -> bool:
        row = self._row(image_id)
        if row is None:
            return False
        check_restore(row.status)
        row.status = PanoramaStatus.DRAFT.value
        row.archived_at = None
        row.updated_at = utcnow()
        return self._commit(f"restoring image {image_id}")

    def mark_posted(self, image_id: str, instagram_post_id: str, posted_at: datetime) -> bool:
        """Post-success write: status, posted_at and instagram_post_id move together."""
        row = self._row(image_id)
        if row is None:
            return False
        row.status = PanoramaStatus.POSTED.value
        row.posted_at = posted_at
        row.instagram_post_id = instagram_post_id
        row.updated_at = posted_at
        return self._commit(f"marking image {image_id} as posted")

    def _commit(self, action: str) -> bool:
        try:
            self.session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Error {action}: {e}", exc_info=True)
            self.session.rollback()
            return False

    # --- Panels ---

    def get_panels(self, image_id: str) -> List[PanoramaPanel]:
        try:
            rows = self.session.execute(
                select(PanoramaPanelRow)
                .where(PanoramaPanelRow.panorama_image_id == image_id)
                .order_by(PanoramaPanelRow.panel_order.asc())
            ).scalars()
            return [PanoramaPanel.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Error fetching panels for image {image_id}: {e}", exc_info=True)
            self.session.rollback()
            return []

    def replace_panels(self, image_id: str, panels: List[PanelIn]) -> List[PanoramaPanel]:
        """
        Delete every panel of the image, then insert the new set. Two commits:
        a failure after the first leaves the image with no panels.
        """
        row = self._row(image_id)
        if row is None:
            raise PanoramaNotFound(image_id)
        try:
            self.session.execute(delete(PanoramaPanelRow).where(PanoramaPanelRow.panorama_image_id == image_id))
            self.session.commit()

            self.session.add_all([
                PanoramaPanelRow(panorama_image_id=image_id, panel_order=p.panel_order, panel_url=p.panel_url)
                for p in panels
            ])
            row.panel_count = len(panels) or None
            row.updated_at = utcnow()
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error replacing panels for image {image_id}: {e}", exc_info=True)
            self.session.rollback()
            raise RepositoryError("Failed to save panels") from e
        return self.get_panels(image_id)

    # --- Instagram history ---

    def record_post_history(
        self,
        panorama_id: str,
        caption: str,
        status: str,
        instagram_post_id: Optional[str],
        posted_by: Optional[str],
        posted_at: datetime,
        result_payload: Dict[str, Any],
        error_message: Optional[str],
    ) -> str:
        entry = InstagramPostHistoryRow(
            panorama_id=panorama_id,
            caption=caption,
            status=status,
            instagram_post_id=instagram_post_id,
            posted_by=posted_by,
            posted_at=posted_at,
            result_payload=result_payload,
            error_message=error_message,
        )
        self.session.add(entry)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise RepositoryError("Failed to write Instagram post history") from e
        return entry.id

    def list_post_history(self, panorama_id: str) -> List[Dict[str, Any]]:
        rows = self.session.execute(
            select(InstagramPostHistoryRow)
            .where(InstagramPostHistoryRow.panorama_id == panorama_id)
            .order_by(InstagramPostHistoryRow.created_at.desc())
        ).scalars()
        return [
            {
                "id": row.id,
                "panorama_id": row.panorama_id,
                "caption": row.caption,
                "status": row.status,
                "instagram_post_id": row.instagram_post_id,
                "posted_by": row.posted_by,
                "posted_at": row.posted_at.isoformat() if row.posted_at else None,
                "result_payload": row.result_payload,
                "error_message": row.error_message,
            }
            for row in rows
        ]

    # --- Hard delete (alternate workflow) ---

    def hard_delete(self, image_id: str) -> bool:
        """
        Permanently remove a panorama: best-effort storage cleanup of every
        derived asset and panel image, then panel, tag and image rows. The
        Instagram post history is kept. Only a failure to delete the image
        row itself is reported.
        """
        row = self._row(image_id)
        if row is None:
            return False
        panels = self.get_panels(image_id)

        urls = [getattr(row, field) for field in _ASSET_FIELDS] + [p.panel_url for p in panels]
        if self.storage is not None:
            for url in dict.fromkeys(u for u in urls if u):
                location = self.storage.path_from_url(url)
                if location is None:
                    logger.warning(f"Could not derive a storage path from {url}; skipping")
                    continue
                bucket, key = location
                try:
                    self.storage.delete(bucket, key)
                except StorageError as e:
                    logger.warning(f"Could not delete {bucket}/{key}: {e}")

        try:
            self.session.execute(delete(PanoramaPanelRow).where(PanoramaPanelRow.panorama_image_id == image_id))
            self.session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Could not delete panels of image {image_id}: {e}")
            self.session.rollback()

        try:
            self.tags.delete_for_image(image_id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not delete tags of image {image_id}: {e}")
            self.session.rollback()

        try:
            self.session.execute(delete(PanoramaImageRow).where(PanoramaImageRow.id == image_id))
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error deleting image {image_id}: {e}", exc_info=True)
            self.session.rollback()
            return False
        logger.info(f"Image {image_id} permanently deleted")
        return True
