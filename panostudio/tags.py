"""
Global tags keyed by slug and per-image tag associations.
"""

import re
from typing import Iterable, List, NamedTuple, Set
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panostudio.config import logger
from panostudio.tables import ImageTagRow, TagRow


_WHITESPACE = re.compile(r"\s+")
_NON_SLUG = re.compile(r"[^a-z0-9-]")


def normalize_slug(name: str) -> str:
    """lowercase -> trim -> whitespace runs to one hyphen -> drop anything outside [a-z0-9-]."""
    slug = name.lower().strip()
    slug = _WHITESPACE.sub("-", slug)
    return _NON_SLUG.sub("", slug)


class TagLookup(NamedTuple):
    names: List[str]
    # False when the association table does not exist in this deployment
    available: bool = True


class TagResolver:
    def __init__(self, session: Session, associations_available: bool = True):
        self.session = session
        self.associations_available = associations_available

    def get_or_create(self, names: Iterable[str]) -> List[str]:
        """
        Resolve tag names to tag ids, creating missing tags with ``usage_count=0``.
        Names that fail lookup or insert are skipped, not fatal. Blank names and
        names whose slug collides with an earlier one in the same call collapse
        onto a single id.
        """
        tag_ids: List[str] = []
        for raw in names:
            if not raw or not raw.strip():
                continue
            name = raw.strip()
            slug = normalize_slug(name)
            if not slug:
                continue
            try:
                tag = self.session.execute(select(TagRow).where(TagRow.slug == slug)).scalar_one_or_none()
                if tag is None:
                    tag = TagRow(name=name, slug=slug, usage_count=0)
                    self.session.add(tag)
                    self.session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Error resolving tag '{name}': {e}", exc_info=True)
                self.session.rollback()
                continue
            if tag.id not in tag_ids:
                tag_ids.append(tag.id)
        return tag_ids

    def replace_for_image(self, image_id: str, names: List[str]) -> None:
        """
        Rewrite the image's tag set: delete every association, then insert the
        resolved set. The two steps are committed separately, so a failure in
        between leaves the image without tags until the next save.
        """
        previous: Set[str] = set(self.session.execute(
            select(ImageTagRow.tag_id).where(ImageTagRow.image_id == image_id)
        ).scalars())

        self.session.execute(delete(ImageTagRow).where(ImageTagRow.image_id == image_id))
        self.session.commit()

        tag_ids: List[str] = []
        if names:
            tag_ids = self.get_or_create(names)
            if tag_ids:
                self.session.add_all([ImageTagRow(image_id=image_id, tag_id=tag_id) for tag_id in tag_ids])
            self.session.commit()

        self._recount(previous | set(tag_ids))

    def names_for_image(self, image_id: str) -> TagLookup:
        if not self.associations_available:
            return TagLookup([], available=False)
        try:
            rows = self.session.execute(
                select(TagRow.name)
                .join(ImageTagRow, ImageTagRow.tag_id == TagRow.id)
                .where(ImageTagRow.image_id == image_id)
                .order_by(TagRow.name)
            ).scalars()
            return TagLookup(list(rows))
        except SQLAlchemyError as e:
            logger.error(f"Error fetching tags for image {image_id}: {e}", exc_info=True)
            self.session.rollback()
            return TagLookup([])

    def list_all(self) -> List[str]:
        """Tag names by usage_count desc, then name asc."""
        rows = self.session.execute(
            select(TagRow.name).order_by(TagRow.usage_count.desc(), TagRow.name.asc())
        ).scalars()
        return list(dict.fromkeys(rows))

    def delete_for_image(self, image_id: str) -> None:
        previous = set(self.session.execute(
            select(ImageTagRow.tag_id).where(ImageTagRow.image_id == image_id)
        ).scalars())
        self.session.execute(delete(ImageTagRow).where(ImageTagRow.image_id == image_id))
        self.session.commit()
        self._recount(previous)

    def _recount(self, tag_ids: Set[str]) -> None:
        """Write usage_count from the association table; failures are logged only."""
        if not tag_ids:
            return
        try:
            for tag_id in tag_ids:
                count = self.session.execute(
                    select(func.count()).select_from(ImageTagRow).where(ImageTagRow.tag_id == tag_id)
                ).scalar_one()
                tag = self.session.get(TagRow, tag_id)
                if tag is not None:
                    tag.usage_count = count
            self.session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Could not refresh tag usage counts: {e}")
            self.session.rollback()
