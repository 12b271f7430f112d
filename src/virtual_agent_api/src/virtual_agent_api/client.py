"""Abstract interfaces for the Virtual Agent API."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from virtual_agent_api.models import ClientConfig, MessageAttachment, RemoteUser

__all__ = ["Client", "OAuthProvider", "get_client", "get_oauth"]


class Client(ABC):
    """The contract for calls made on behalf of a linked user."""

    @abstractmethod
    def send_message(
        self,
        user_id: str,
        text: str,
        *,
        typed: bool = True,
        attachment: MessageAttachment | None = None,
    ) -> None:
        """Forward a user message to the remote agent.

        Args:
            user_id: Remote (sys_id) identifier of the user.
            text: Message text.
            typed: Whether the text was typed rather than picked.
            attachment: Optional file reference the agent can download.

        Raises:
            TransportError: The call failed or the agent returned an error.

        """
        raise NotImplementedError

    @abstractmethod
    def start_conversation(self, user_id: str) -> None:
        """Ask the remote agent to open a new conversation for the user."""
        raise NotImplementedError

    @abstractmethod
    def get_me(self, email: str | None = None) -> RemoteUser:
        """Look up the remote user record.

        Args:
            email: Match this email address. When omitted the record of the
                user who owns the OAuth token is returned.

        Raises:
            TransportError: The lookup failed or no user matches.

        """
        raise NotImplementedError


class OAuthProvider(ABC):
    """Authorization-code flow against the remote platform."""

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """Return the consent URL carrying ``state``."""
        raise NotImplementedError

    @abstractmethod
    def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for a token dict."""
        raise NotImplementedError


def get_client(
    config: ClientConfig,
    token: dict[str, Any],
    token_updater: Callable[[dict[str, Any]], None] | None = None,
) -> Client:
    """Return a client bound to a user's OAuth token.

    Args:
        config: Connection settings snapshot.
        token: Decrypted OAuth2 token dict.
        token_updater: Called with the new token whenever it is refreshed.

    Returns:
        Client implementation.

    """
    raise NotImplementedError


def get_oauth(config: ClientConfig) -> OAuthProvider:
    """Return the OAuth provider implementation for ``config``."""
    raise NotImplementedError
