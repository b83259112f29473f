from datetime import timedelta
import pytest
from sqlalchemy import select

from panostudio.security.token_manager import TOKEN_LIFETIME_SECONDS, TokenManager
from panostudio.services.instagram_service import InstagramAPIError
from panostudio.tables import InstagramCredentialRow
from panostudio.utils import as_utc, utcnow


@pytest.fixture
def tokens(db_session, settings, instagram):
    return TokenManager(db_session, settings, instagram)


def test_environment_token_when_nothing_stored(tokens):
    info = tokens.get_token_info()
    assert info.access_token == "env-token"
    assert info.source == "environment"
    assert info.expires_at is None
    assert info.days_until_expiration is None
    assert info.is_expiring_soon is False


def test_no_token_at_all(db_session, settings, instagram):
    settings.instagram_access_token = None
    assert TokenManager(db_session, settings, instagram).get_token_info() is None


def test_stored_token_wins(tokens):
    tokens.save_token("stored-token-abcdefghijkl", utcnow() + timedelta(days=30))
    info = tokens.get_token_info()
    assert info.access_token == "stored-token-abcdefghijkl"
    assert info.source == "stored"
    assert info.days_until_expiration in (29, 30)
    assert info.is_expiring_soon is False


@pytest.mark.parametrize("days,expiring", [(3, True), (7, True), (8, True), (9, False), (45, False)])
def test_expiring_soon_threshold(tokens, days, expiring):
    """Expiring soon means at most seven whole days left."""
    tokens.save_token("stored-token-abcdefghijkl", utcnow() + timedelta(days=days))
    assert tokens.get_token_info().is_expiring_soon is expiring


def test_newest_stored_token_is_used(tokens):
    tokens.save_token("first-token-aaaaaaaaaaaa", utcnow() + timedelta(days=10))
    tokens.save_token("second-token-bbbbbbbbbbb", utcnow() + timedelta(days=50))
    assert tokens.get_token_info().access_token == "second-token-bbbbbbbbbbb"


def test_metadata_rows_do_not_shadow_tokens(tokens):
    tokens.save_token("stored-token-abcdefghijkl", utcnow() + timedelta(days=30))
    tokens.record_credential_metadata("EAAG…xyz", utcnow() + timedelta(days=60), "1784", "manual", "admin")
    assert tokens.get_token_info().access_token == "stored-token-abcdefghijkl"
    latest = tokens.latest_credential()
    assert latest["token_hint"] == "EAAG…xyz"
    assert latest["has_token"] is False
    assert latest["updated_by"] == "admin"


def test_save_token_never_exposes_secret_in_hint(tokens):
    row = tokens.save_token("EAAGsupersecretvalue1234", utcnow() + timedelta(days=60))
    assert row.token_hint == "EAAGsu…1234"
    assert "supersecret" not in row.token_hint


def test_short_token_hint_is_masked(tokens):
    row = tokens.save_token("shorttoken", utcnow() + timedelta(days=60))
    assert row.token_hint == "***"


def test_refresh_persists_new_token(tokens, instagram):
    result = tokens.refresh_access_token("env-token")

    assert result.success is True
    assert result.access_token == "refreshed-token"
    instagram.refresh_token.assert_called_once_with("env-token")
    # refresh never re-validates its input
    instagram.validate_token.assert_not_called()
    info = tokens.get_token_info()
    assert info.access_token == "refreshed-token"
    assert info.source == "stored"
    assert info.days_until_expiration in (59, 60)


def test_refresh_defaults_to_sixty_days(tokens, instagram):
    instagram.refresh_token.return_value = {"access_token": "refreshed-token"}
    result = tokens.refresh_access_token("env-token")
    expected = utcnow() + timedelta(seconds=TOKEN_LIFETIME_SECONDS)
    assert abs((as_utc(result.expires_at) - expected).total_seconds()) < 60


def test_refresh_failure(db_session, tokens, instagram):
    instagram.refresh_token.side_effect = InstagramAPIError("Session has expired")
    result = tokens.refresh_access_token("dead-token")
    assert result.success is False
    assert result.error == "Session has expired"
    assert db_session.execute(select(InstagramCredentialRow)).first() is None


def test_import_from_env(db_session, tokens, instagram):
    result = tokens.import_from_env()

    assert result.success is True
    instagram.validate_token.assert_called_once_with("env-token")
    row = db_session.execute(select(InstagramCredentialRow)).scalar_one()
    assert row.access_token == "env-token"
    assert row.refresher_note == "Imported from environment variable"
    assert tokens.get_token_info().source == "stored"


def test_import_from_env_without_value(db_session, settings, instagram):
    settings.instagram_access_token = None
    result = TokenManager(db_session, settings, instagram).import_from_env()
    assert result.success is False
    assert "INSTAGRAM_ACCESS_TOKEN" in result.error
    instagram.validate_token.assert_not_called()


def test_import_from_env_with_invalid_token(db_session, tokens, instagram):
    instagram.validate_token.return_value = False
    result = tokens.import_from_env()
    assert result.success is False
    assert db_session.execute(select(InstagramCredentialRow)).first() is None


def test_get_access_token_auto_refreshes_expiring_stored_token(tokens, instagram):
    tokens.save_token("old-stored-token-zzzzzzz", utcnow() + timedelta(days=2))
    assert tokens.get_access_token() == "refreshed-token"
    instagram.refresh_token.assert_called_once_with("old-stored-token-zzzzzzz")


def test_get_access_token_keeps_current_token_when_refresh_fails(tokens, instagram):
    tokens.save_token("old-stored-token-zzzzzzz", utcnow() + timedelta(days=2))
    instagram.refresh_token.side_effect = InstagramAPIError("boom")
    assert tokens.get_access_token() == "old-stored-token-zzzzzzz"


def test_get_access_token_never_refreshes_environment_token(tokens, instagram):
    assert tokens.get_access_token() == "env-token"
    instagram.refresh_token.assert_not_called()
