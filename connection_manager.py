import logging
from enum import Enum
from typing import Optional

from authority_client import AuthorityClient
from pos_errors import AuthenticationError, RemoteError
from pos_models import ConnectionConfig

log = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    NEEDS_RECONNECT = "needs_reconnect"


class ConnectionManager:
    """
    Tracks whether the remote authority is usable.

    The state is written by the sync engine and the reachability check, and
    read by anyone without a lock. A rejected credential parks the manager
    in NEEDS_RECONNECT until ``configure`` supplies new credentials.
    """

    def __init__(self, client: AuthorityClient, config: Optional[ConnectionConfig] = None):
        self.client = client
        self.config = config or client.config
        self.client.config = self.config
        self._state = ConnectionState.OFFLINE

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_online(self) -> bool:
        return self._state == ConnectionState.ONLINE

    def needs_reconnect(self) -> bool:
        return self._state == ConnectionState.NEEDS_RECONNECT

    def check_reachable(self) -> bool:
        """Hit the public status endpoint. Any failure reads as offline."""
        if not self.config.is_configured:
            self._set(ConnectionState.OFFLINE)
            return False
        try:
            reachable = self.client.check_status()
        except RemoteError as exc:
            log.info("Status check failed: %s", exc)
            reachable = False
        self.config.last_known_reachable = reachable
        if not reachable:
            if self._state != ConnectionState.NEEDS_RECONNECT:
                self._set(ConnectionState.OFFLINE)
            return False
        if self._state != ConnectionState.NEEDS_RECONNECT:
            self._set(ConnectionState.ONLINE)
        return self.is_online()

    def mark_online(self):
        self.config.last_known_reachable = True
        if self._state != ConnectionState.NEEDS_RECONNECT:
            self._set(ConnectionState.ONLINE)

    def mark_offline(self):
        self.config.last_known_reachable = False
        if self._state != ConnectionState.NEEDS_RECONNECT:
            self._set(ConnectionState.OFFLINE)

    def mark_auth_failed(self, exc: Optional[AuthenticationError] = None):
        self.config.last_known_reachable = True
        if self._state != ConnectionState.NEEDS_RECONNECT:
            log.warning("Authority rejected the credential; reconnect required (%s)", exc or "auth failed")
        self._set(ConnectionState.NEEDS_RECONNECT)

    def configure(self, base_url: Optional[str], api_key: Optional[str]) -> ConnectionConfig:
        """Swap in new connection details. State drops to OFFLINE until the next reachability check."""
        self.config.base_url = (base_url or "").strip() or None
        self.config.api_key = (api_key or "").strip() or None
        self.config.last_known_reachable = False
        self._state = ConnectionState.OFFLINE
        log.info("Connection configured for %s", self.config.base_url or "<none>")
        return self.config

    def _set(self, state: ConnectionState):
        if state != self._state:
            log.info("Connection %s -> %s", self._state.value, state.value)
        self._state = state
