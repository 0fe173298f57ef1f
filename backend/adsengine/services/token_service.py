"""
Token Service — Meta access token freshness for stored credentials.
Checks token expiry before a run and extends long-lived tokens when the app
id/secret are configured. Expired tokens surface as CredentialExpired.
"""

import logging
from datetime import datetime, timedelta, timezone
import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from adsengine.config import get_settings
from adsengine.crypto import decrypt_value, encrypt_value, mask_token
from adsengine.errors import CredentialExpired
from adsengine.models import AdPlatformCredential, CredentialStatus
from adsengine.platform_client import MetaAdsClient, create_platform_client

logger = logging.getLogger(__name__)

# Extend tokens this long before they actually expire
REFRESH_BUFFER = timedelta(days=3)


async def exchange_long_lived_token(access_token: str) -> dict:
    """
    Exchange a still-valid token for a fresh long-lived one (fb_exchange_token).
    Returns dict with access_token, expires_in, token_type.
    """
    settings = get_settings()
    async with httpx.AsyncClient() as client:
        response = await client.get(
            f"{settings.meta_graph_url}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": settings.meta_app_id,
                "client_secret": settings.meta_app_secret,
                "fb_exchange_token": access_token,
            },
            timeout=30,
        )
        response.raise_for_status()
        return response.json()


def _make_aware(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (UTC). DB may return naive datetimes."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def token_is_expired(cred: AdPlatformCredential, now: datetime | None = None) -> bool:
    if cred.status == CredentialStatus.EXPIRED.value:
        return True
    if not cred.token_expires_at:
        return False  # Meta system-user tokens never expire
    now = now or datetime.now(timezone.utc)
    return _make_aware(now) >= _make_aware(cred.token_expires_at)


def _token_needs_refresh(cred: AdPlatformCredential) -> bool:
    if not cred.token_expires_at:
        return False
    expires_at = _make_aware(cred.token_expires_at)
    return datetime.now(timezone.utc) >= (expires_at - REFRESH_BUFFER)


async def ensure_fresh_token(cred: AdPlatformCredential, db: AsyncSession) -> AdPlatformCredential:
    """
    Extend the token if it is close to expiry. Raises CredentialExpired if the
    token is already expired and cannot be renewed.
    """
    if token_is_expired(cred):
        if cred.status != CredentialStatus.EXPIRED.value:
            cred.status = CredentialStatus.EXPIRED.value
            await db.flush()
        raise CredentialExpired(f"Ad platform token for user {cred.user_id} has expired")

    settings = get_settings()
    if not _token_needs_refresh(cred) or not settings.meta_app_id or not settings.meta_app_secret:
        return cred

    logger.info(f"Token for user {cred.user_id} expires soon, extending...")
    try:
        token_data = await exchange_long_lived_token(decrypt_value(cred.access_token))
        cred.access_token = encrypt_value(token_data["access_token"])
        expires_in = token_data.get("expires_in")
        if expires_in:
            cred.token_expires_at = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=int(expires_in))
        cred.status = CredentialStatus.ACTIVE.value
        await db.flush()
        logger.info(f"Token extended for user {cred.user_id}")
    except httpx.HTTPStatusError as e:
        logger.error(f"Token exchange failed for user {cred.user_id}: {e.response.status_code} — {e.response.text}")
    except Exception as e:
        logger.error(f"Token exchange failed for user {cred.user_id}: {e}")

    return cred


async def get_platform_client_with_fresh_token(
    cred: AdPlatformCredential,
    db: AsyncSession,
) -> MetaAdsClient:
    """
    Get a platform client with a usable access token.
    This is the main entry point — use this instead of create_platform_client directly.
    """
    cred = await ensure_fresh_token(cred, db)
    access_token = decrypt_value(cred.access_token)
    logger.info(f"Platform client for user {cred.user_id}, account {cred.ad_account_id} (token {mask_token(access_token)})")
    return create_platform_client(
        access_token=access_token,
        ad_account_id=cred.ad_account_id,
        page_id=cred.page_id,
    )
