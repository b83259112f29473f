from typing import Optional
from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse

from panostudio.config import logger
from panostudio.dependencies import get_current_user, get_instagram, get_token_manager
from panostudio.models import CredentialMetadataRequest, TokenRefreshRequest, TokenVerifyRequest
from panostudio.security.token_manager import TokenManager
from panostudio.services.instagram_service import InstagramAPIError, InstagramService

router = APIRouter()


@router.get("/refresh")
def token_health(
    user_id: str = Depends(get_current_user),
    tokens: TokenManager = Depends(get_token_manager),
):
    """Current token status, validated live, without refreshing it."""
    info = tokens.get_token_info()
    if info is None:
        return {
            "hasToken": False,
            "source": None,
            "expiresAt": None,
            "daysUntilExpiration": None,
            "isExpiringSoon": False,
            "isValid": False,
        }
    return {
        "hasToken": True,
        "source": info.source,
        "expiresAt": info.expires_at.isoformat() if info.expires_at else None,
        "daysUntilExpiration": info.days_until_expiration,
        "isExpiringSoon": info.is_expiring_soon,
        "isValid": tokens.validate_token(info.access_token),
    }


@router.post("/refresh")
def refresh_token(
    body: Optional[TokenRefreshRequest] = Body(None),
    user_id: str = Depends(get_current_user),
    tokens: TokenManager = Depends(get_token_manager),
):
    """
    Refresh the current token, optionally importing ``INSTAGRAM_ACCESS_TOKEN``
    into the store first when nothing is stored yet.
    """
    info = tokens.get_token_info()

    if body is not None and body.import_from_env and (info is None or info.source == "environment"):
        imported = tokens.import_from_env()
        if not imported.success:
            raise HTTPException(status_code=400, detail=imported.error or "Failed to import token from environment")
        info = tokens.get_token_info()

    if info is None:
        raise HTTPException(
            status_code=400,
            detail="No Instagram token available. Set INSTAGRAM_ACCESS_TOKEN or import a token first.",
        )

    # refresh requires a valid token; check it here
    if not tokens.validate_token(info.access_token):
        return JSONResponse(status_code=400, content={
            "error": "Current token is invalid or expired. Please obtain a new token from Facebook Graph API Explorer.",
            "tokenSource": info.source,
        })

    result = tokens.refresh_access_token(info.access_token)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Failed to refresh token")

    logger.info(f"Instagram token refreshed by {user_id}")
    return {
        "success": True,
        "expiresAt": result.expires_at.isoformat() if result.expires_at else None,
        "message": "Token refreshed successfully",
    }


@router.get("/status")
def credential_status(
    user_id: str = Depends(get_current_user),
    tokens: TokenManager = Depends(get_token_manager),
):
    return {"credential": tokens.latest_credential()}


@router.post("/status")
def record_credential_status(
    body: CredentialMetadataRequest,
    user_id: str = Depends(get_current_user),
    tokens: TokenManager = Depends(get_token_manager),
):
    credential = tokens.record_credential_metadata(
        token_hint=body.token_hint,
        expires_at=body.expires_at,
        instagram_business_account_id=body.instagram_business_account_id,
        notes=body.notes,
        updated_by=user_id,
    )
    return {"credential": credential}


@router.post("/verify")
def verify_token(
    body: TokenVerifyRequest,
    user_id: str = Depends(get_current_user),
    instagram: InstagramService = Depends(get_instagram),
):
    """Check an arbitrary token and return the profile it belongs to."""
    if not instagram.validate_token(body.token):
        return JSONResponse(status_code=400, content={"success": False, "error": "Token validation failed"})
    try:
        profile = instagram.fetch_profile(body.token)
    except InstagramAPIError as e:
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
    return {"success": True, "profile": profile}
