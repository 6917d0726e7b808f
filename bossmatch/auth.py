"""
Access-token lookup for SecondMe users.

Tokens are refreshed shortly before they expire; any failure along the way
yields None so callers can report "needs re-login" without touching state.
"""
import logging
from datetime import datetime, timedelta

import requests
from sqlalchemy.orm import Session

from bossmatch import config
from bossmatch.db import User

logger = logging.getLogger(__name__)


def _needs_refresh(user: User, now: datetime) -> bool:
    if user.token_expires_at is None:
        return True
    return now >= user.token_expires_at - timedelta(seconds=config.TOKEN_REFRESH_MARGIN)


def refresh_access_token(session: Session, user: User, http=requests) -> str | None:
    if not config.SECONDME_CLIENT_ID or not config.SECONDME_CLIENT_SECRET:
        logger.error('SECONDME_CLIENT_ID / SECONDME_CLIENT_SECRET not set, cannot refresh token')
        return None
    if not user.refresh_token:
        logger.warning(f"User {user.id} has no refresh token")
        return None

    try:
        resp = http.post(
            config.api_url(config.SECONDME_REFRESH_TOKEN_ENDPOINT),
            data={
                'grant_type': 'refresh_token',
                'refresh_token': user.refresh_token,
                'client_id': config.SECONDME_CLIENT_ID,
                'client_secret': config.SECONDME_CLIENT_SECRET,
            },
            timeout=30,
        )
        resp.raise_for_status()
        payload = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Token refresh failed for user {user.id}: {e}")
        return None

    data = payload.get('data') if isinstance(payload, dict) else None
    if not isinstance(data, dict) or payload.get('code') != 0 or not data.get('accessToken'):
        logger.error(f"Token refresh rejected for user {user.id}: {payload}")
        return None

    user.access_token = data['accessToken']
    user.refresh_token = data.get('refreshToken') or user.refresh_token
    user.token_expires_at = datetime.utcnow() + timedelta(seconds=int(data.get('expiresIn', 7200)))
    session.commit()

    logger.info(f"Refreshed access token for user {user.id}")
    return user.access_token


def get_valid_access_token(session: Session, user_id: str, http=requests) -> str | None:
    user = session.get(User, user_id)
    if user is None:
        return None

    if _needs_refresh(user, datetime.utcnow()):
        return refresh_access_token(session, user, http=http)

    return user.access_token
