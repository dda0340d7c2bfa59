from typing import Optional


class RemoteError(Exception):
    """A request to the remote authority did not produce a usable answer."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Timeout, unreachable host, 5xx or unreadable body. Retrying may help."""


class AuthenticationError(RemoteError):
    """Credential rejected (401/403). Retrying will not help until the key changes."""


class EndpointUnavailable(RemoteError):
    """The authority does not implement the endpoint (404/405/501)."""


class UnknownEntityError(KeyError):
    """A mutation referenced an entity the local store does not hold."""
    def __init__(self, kind: str, entity_id: Optional[str]):
        super().__init__(f"{kind} {entity_id!r} not found")
        self.kind = kind
        self.entity_id = entity_id
