from __future__ import annotations

import secrets
from typing import Optional

from hrsession.logging import get_logger
from hrsession.service.errors import AuthError
from hrsession.service.provider import IdentityProvider
from hrsession.storage.state import StateKeys, StateStore

logger = get_logger(__name__)


class LocalSessionTokenStore:
    """This client's marker for "I am the newest login".

    The same random token is written locally and, through the provider's
    privileged write, onto the identity's server record. The newest login
    always overwrites the server copy, so a mismatch means this client has
    been superseded.
    """

    def __init__(
        self,
        state: StateStore,
        provider: IdentityProvider,
        *,
        keys: Optional[StateKeys] = None,
    ) -> None:
        self.state = state
        self.provider = provider
        self.keys = keys or StateKeys()

    def get(self) -> Optional[str]:
        return self.state.get(self.keys.session_token) or None

    async def issue(self) -> str:
        """Generate a token and record it locally and on the server.

        If the server write fails the local copy is removed before the error
        propagates, so an older token left on the server is never mistaken
        for a newer login.
        """
        token = secrets.token_urlsafe(32)
        self.state.set(self.keys.session_token, token)
        try:
            await self.provider.set_session_token(token)
        except AuthError:
            self.state.remove(self.keys.session_token)
            raise
        logger.info("session_token_issued")
        return token

    async def clear(self, *, remote: bool = True) -> None:
        """Drop the local token; with ``remote`` also blank the server field.

        A failed remote clear is logged, the local token is removed regardless.
        """
        self.state.remove(self.keys.session_token)
        if not remote:
            return
        try:
            await self.provider.set_session_token(None)
        except AuthError as exc:
            logger.warning("session_token_clear_failed", kind=exc.kind.value, error=exc.message)

    def is_superseded_by(self, server_token: Optional[str]) -> bool:
        local = self.get()
        return bool(local and server_token and local != server_token)
