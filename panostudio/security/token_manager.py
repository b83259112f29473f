import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panostudio.config import Settings, logger
from panostudio.models import RefreshResult, TokenInfo
from panostudio.services.instagram_service import InstagramAPIError, InstagramService
from panostudio.tables import InstagramCredentialRow
from panostudio.utils import as_utc, token_hint as hint_for, utcnow

# Lifetime of a long-lived Instagram token when the API does not say otherwise
TOKEN_LIFETIME_SECONDS = 5184000


class TokenManager:
    """
    Keeps track of the long-lived Instagram access token across restarts.

    Tokens are persisted as append-only rows of ``instagram_credentials``; the
    newest row carrying a token wins over the ``INSTAGRAM_ACCESS_TOKEN``
    environment value.
    """

    def __init__(self, session: Session, settings: Settings, instagram: InstagramService):
        """
        :param session: Open SQLAlchemy session.
        :type session: Session
        :param settings: Process configuration (environment token, expiry threshold).
        :type settings: Settings
        :param instagram: Graph API facade used for validation and refresh.
        :type instagram: InstagramService
        """
        self.session = session
        self.settings = settings
        self.instagram = instagram

    def get_token_info(self) -> Optional[TokenInfo]:
        """
        Current token with its origin and expiry health.

        :return: The stored token if any, else the environment token, else None.
        :rtype: Optional[TokenInfo]
        """
        try:
            row = self.session.execute(
                select(InstagramCredentialRow)
                .where(InstagramCredentialRow.access_token.is_not(None))
                .order_by(InstagramCredentialRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Could not read stored Instagram token: {e}", exc_info=True)
            self.session.rollback()
            row = None

        if row is not None:
            expires_at = as_utc(row.expires_at)
            days = None
            if expires_at is not None:
                days = math.floor((expires_at - utcnow()).total_seconds() / 86400)
            return TokenInfo(
                access_token=row.access_token,
                source="stored",
                expires_at=expires_at,
                days_until_expiration=days,
                is_expiring_soon=days is not None and days <= self.settings.token_refresh_threshold_days,
            )

        if self.settings.instagram_access_token:
            # expiry of an environment token is unknown
            return TokenInfo(access_token=self.settings.instagram_access_token, source="environment")
        return None

    def get_access_token(self) -> Optional[str]:
        """
        Token to publish with. A stored token close to expiry is refreshed
        first; if that refresh fails the current (not yet expired) token is used.
        """
        info = self.get_token_info()
        if info is None:
            return None
        if info.is_expiring_soon and info.source == "stored":
            logger.info(f"Instagram token expires in {info.days_until_expiration} days, attempting auto-refresh...")
            result = self.refresh_access_token(info.access_token)
            if result.success and result.access_token:
                return result.access_token
            logger.warning(f"Auto-refresh failed, using existing token: {result.error}")
        return info.access_token

    def validate_token(self, token: Optional[str]) -> bool:
        return self.instagram.validate_token(token)

    def refresh_access_token(self, token: str) -> RefreshResult:
        """
        Exchange ``token`` for a refreshed one and persist it.

        The caller is expected to have validated ``token`` beforehand; an
        invalid token simply yields a failed result from the API.

        :param token: A valid long-lived token.
        :type token: str
        :return: The refreshed token and its expiry, or the API error.
        :rtype: RefreshResult
        """
        try:
            data = self.instagram.refresh_token(token)
        except InstagramAPIError as e:
            logger.error(f"Instagram token refresh failed: {e}")
            return RefreshResult(success=False, error=str(e))

        expires_in = data.get("expires_in") or TOKEN_LIFETIME_SECONDS
        expires_at = utcnow() + timedelta(seconds=int(expires_in))
        new_token = data["access_token"]

        try:
            self.save_token(new_token, expires_at)
        except SQLAlchemyError as e:
            # the refreshed token is still usable by the caller
            logger.warning(f"Token refreshed but failed to save: {e}")

        return RefreshResult(success=True, access_token=new_token, expires_at=expires_at)

    def import_from_env(self) -> RefreshResult:
        """
        Seed the store with the ``INSTAGRAM_ACCESS_TOKEN`` value. Its real
        expiry is unknown, so it is recorded as freshly issued; a refresh
        afterwards gives the exact date.
        """
        env_token = self.settings.instagram_access_token
        if not env_token:
            return RefreshResult(success=False, error="No INSTAGRAM_ACCESS_TOKEN environment variable found")
        if not self.validate_token(env_token):
            return RefreshResult(success=False, error="Environment token is invalid or expired")

        expires_at = utcnow() + timedelta(seconds=TOKEN_LIFETIME_SECONDS)
        try:
            self.save_token(env_token, expires_at, note="Imported from environment variable")
        except SQLAlchemyError as e:
            logger.error(f"Could not store the environment token: {e}", exc_info=True)
            return RefreshResult(success=False, error="Failed to store the environment token")
        return RefreshResult(success=True, access_token=env_token, expires_at=expires_at)

    def save_token(self, token: str, expires_at: datetime, note: Optional[str] = None,
                   updated_by: Optional[str] = None) -> InstagramCredentialRow:
        """
        Append a credential row holding ``token``.

        :raises SQLAlchemyError: If the insert fails (the session is rolled back).
        """
        now = utcnow()
        row = InstagramCredentialRow(
            access_token=token,
            token_hint=hint_for(token),
            expires_at=expires_at,
            last_refreshed_at=now,
            refresher_note=note or "Auto-refreshed",
            updated_by=updated_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.info(f"Instagram token {row.token_hint} stored, expires {expires_at.isoformat()}")
        return row

    def latest_credential(self) -> Optional[Dict[str, Any]]:
        """Most recently updated credential snapshot, without the secret itself."""
        row = self.session.execute(
            select(InstagramCredentialRow)
            .order_by(InstagramCredentialRow.updated_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        return credential_to_dict(row) if row is not None else None

    def record_credential_metadata(
        self,
        token_hint: str,
        expires_at: datetime,
        instagram_business_account_id: Optional[str],
        notes: Optional[str],
        updated_by: str,
    ) -> Dict[str, Any]:
        """Append a metadata-only snapshot (no token) entered by an admin."""
        now = utcnow()
        row = InstagramCredentialRow(
            token_hint=token_hint,
            expires_at=expires_at,
            instagram_business_account_id=instagram_business_account_id,
            notes=notes,
            updated_by=updated_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return credential_to_dict(row)


def credential_to_dict(row: InstagramCredentialRow) -> Dict[str, Any]:
    def iso(value: Optional[datetime]) -> Optional[str]:
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": row.id,
        "token_hint": row.token_hint,
        "has_token": bool(row.access_token),
        "expires_at": iso(row.expires_at),
        "instagram_business_account_id": row.instagram_business_account_id,
        "notes": row.notes,
        "last_refreshed_at": iso(row.last_refreshed_at),
        "refresher_note": row.refresher_note,
        "updated_by": row.updated_by,
        "created_at": iso(row.created_at),
        "updated_at": iso(row.updated_at),
    }
