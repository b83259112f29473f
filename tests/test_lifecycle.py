import pytest

from panostudio.lifecycle import (
    InvalidTransition, PanoramaStatus, check_edit_transition, check_publishable, check_restore,
)


@pytest.mark.parametrize("current,target", [
    ("draft", "ready"),
    ("ready", "private"),
    ("private", "draft"),
    ("ready", "draft"),
    ("posted", "posted"),
    ("archived", "archived"),
])
def test_edit_transitions_allowed(current, target):
    check_edit_transition(current, target)


@pytest.mark.parametrize("current,target", [
    ("draft", "posted"),
    ("ready", "archived"),
    ("posted", "draft"),
    ("posted", "ready"),
    ("archived", "draft"),
])
def test_edit_transitions_rejected(current, target):
    with pytest.raises(InvalidTransition):
        check_edit_transition(current, target)


def test_restore_only_from_archived():
    check_restore(PanoramaStatus.ARCHIVED)
    with pytest.raises(InvalidTransition):
        check_restore(PanoramaStatus.DRAFT)


def test_archived_is_not_publishable():
    for status in ("draft", "ready", "private", "posted"):
        check_publishable(status)
    with pytest.raises(InvalidTransition):
        check_publishable("archived")


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        check_edit_transition("draft", "published")
