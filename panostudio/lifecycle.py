"""
Panorama status lifecycle.

    draft <-> ready <-> private      (edit-save, caller driven)
    draft/ready/private/posted -> posted   (successful Instagram publish only)
    any -> archived                  (soft delete)
    archived -> draft                (restore)

Nothing here moves a panorama on its own; every transition is requested by a
caller and only validated here.
"""

from enum import Enum


class PanoramaStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    POSTED = "posted"
    PRIVATE = "private"
    ARCHIVED = "archived"


EDITABLE_STATUSES = frozenset({PanoramaStatus.DRAFT, PanoramaStatus.READY, PanoramaStatus.PRIVATE})


class InvalidTransition(Exception):
    """Raised when a requested status change is not part of the lifecycle."""
    pass


def check_edit_transition(current: PanoramaStatus, target: PanoramaStatus) -> None:
    """
    Validate a status change requested through an edit-save.

    Saving with an unchanged status is always accepted. ``posted`` and
    ``archived`` are entered through their own operations, never through an
    edit, and a posted panorama cannot be edited back into a working state.
    """
    current = PanoramaStatus(current)
    target = PanoramaStatus(target)
    if current == target:
        return
    if target == PanoramaStatus.POSTED:
        raise InvalidTransition("Status 'posted' is only set by a successful Instagram publish.")
    if target == PanoramaStatus.ARCHIVED:
        raise InvalidTransition("Use the archive operation to archive a panorama.")
    if current == PanoramaStatus.ARCHIVED:
        raise InvalidTransition("Archived panoramas must be restored before they can be edited.")
    if current == PanoramaStatus.POSTED:
        raise InvalidTransition(f"A posted panorama cannot move back to '{target.value}'.")


def check_restore(current: PanoramaStatus) -> None:
    if PanoramaStatus(current) != PanoramaStatus.ARCHIVED:
        raise InvalidTransition("Only archived panoramas can be restored.")


def check_publishable(current: PanoramaStatus) -> None:
    if PanoramaStatus(current) == PanoramaStatus.ARCHIVED:
        raise InvalidTransition("Archived panoramas cannot be published; restore it first.")
