"""OAuth token lifecycle for per-user Google credentials."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
import pytz
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .database import DatabaseManager
from .models import GoogleCredential
from .services.base import AuthenticationError, TransientError

logger = logging.getLogger(__name__)

# Refresh tokens that expire within this window.
REFRESH_MARGIN = timedelta(seconds=60)

TokenRefresher = Callable[[GoogleCredential], Awaitable[Dict[str, Any]]]


class AuthManager:
    """Keeps access tokens usable and flags credentials that need re-consent."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        refresher: Optional[TokenRefresher] = None,
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.logger = logger.getChild('auth')
        self._refresher = refresher or self._refresh_with_google

    async def ensure_valid_access_token(self, user_id: str) -> GoogleCredential:
        """Return the user's credential with an access token valid for at least a minute.

        Args:
            user_id: Owning user

        Returns:
            Credential carrying a usable access token

        Raises:
            AuthenticationError: If the user is not connected, is flagged for
                re-consent, or the refresh token was revoked
            TransientError: If the token endpoint stayed unreachable
        """
        with self.db_manager.get_session() as session:
            credential = self.db_manager.get_credential(session, user_id)

        if credential is None:
            raise AuthenticationError(
                "Google Calendar is not connected for this user", code='not_connected',
                context={'user_id': user_id},
            )
        if credential.needs_reauth:
            raise AuthenticationError(
                "Google credential needs re-authorization", code='needs_reauth',
                context={'user_id': user_id},
            )

        now = datetime.now(pytz.UTC)
        if credential.expires_at and credential.expires_at - now >= REFRESH_MARGIN:
            return credential

        try:
            refreshed = await self._refresh(credential)
        except AuthenticationError:
            with self.db_manager.get_session() as session:
                self.db_manager.set_credential_reauth(session, user_id, True)
                session.commit()
            self.logger.warning(f"Refresh token rejected for user {user_id}; flagged for re-consent")
            raise

        updates: Dict[str, Any] = {'access_token': refreshed['access_token']}
        if refreshed.get('expires_at'):
            updates['expires_at'] = refreshed['expires_at']
        for key in ('scope', 'token_type', 'id_token'):
            if refreshed.get(key):
                updates[key] = refreshed[key]

        with self.db_manager.get_session() as session:
            credential = self.db_manager.upsert_credential(session, user_id, **updates)
            session.commit()
        self.logger.debug(f"Refreshed access token for user {user_id}")
        return credential

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )
    async def _refresh(self, credential: GoogleCredential) -> Dict[str, Any]:
        if not credential.refresh_token:
            raise AuthenticationError(
                "No refresh token stored", code='missing_refresh_token',
                context={'user_id': credential.user_id},
            )
        return await self._refresher(credential)

    async def _refresh_with_google(self, credential: GoogleCredential) -> Dict[str, Any]:
        creds = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
        )
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: creds.refresh(Request()))
        except RefreshError as e:
            # google-auth raises RefreshError for both revoked grants and
            # retryable token endpoint failures
            if getattr(e, 'retryable', False):
                raise TransientError(f"Token refresh failed: {e}", code='refresh_failed') from e
            raise AuthenticationError(
                f"Failed to refresh Google access token: {e}", status=400, code='invalid_grant',
                context={'user_id': credential.user_id},
            ) from e
        except TransportError as e:
            raise TransientError(f"Token endpoint unreachable: {e}", code='network') from e

        expires_at = None
        if creds.expiry is not None:
            expires_at = creds.expiry.replace(tzinfo=pytz.UTC)
        return {
            'access_token': creds.token,
            'expires_at': expires_at,
            'scope': ' '.join(creds.scopes) if creds.scopes else None,
            'id_token': creds.id_token,
        }


def authorize_user_interactively(settings: Settings, db_manager: DatabaseManager, user_id: str) -> GoogleCredential:
    """Run the browser consent flow and store the resulting credential.

    Clears any pending re-authorization flag for the user.
    """
    client_config = {
        "installed": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": settings.google_token_uri,
            "redirect_uris": ["http://localhost"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, settings.google_scopes)
    creds = flow.run_local_server(port=0, access_type='offline', prompt='consent')

    with db_manager.get_session() as session:
        stored = db_manager.upsert_credential(
            session,
            user_id,
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            scope=' '.join(creds.scopes or settings.google_scopes),
            expires_at=creds.expiry.replace(tzinfo=pytz.UTC) if creds.expiry else None,
            id_token=creds.id_token,
            needs_reauth=False,
        )
        session.commit()
    logger.info(f"Stored Google credential for user {user_id}")
    return stored
