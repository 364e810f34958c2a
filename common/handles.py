import uuid
from typing import Dict, Optional, Tuple

# Live handles: token -> (encoded bytes, mime). A released handle is dropped from here,
# so its URL stops resolving.
_REGISTRY: Dict[str, Tuple[bytes, str]] = {}

URL_PREFIX = "/results/"


class DisplayHandle:
    """A revocable URL pointing at a result's encoded bytes."""

    def __init__(self, data: bytes, mime: str = "application/octet-stream"):
        self.token = uuid.uuid4().hex
        self.released = False
        _REGISTRY[self.token] = (data, mime)

    @property
    def url(self) -> str:
        return f"{URL_PREFIX}{self.token}"

    def release(self) -> None:
        if self.released:
            raise RuntimeError(f"Display handle {self.token} already released")
        self.released = True
        _REGISTRY.pop(self.token, None)

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"DisplayHandle({self.token}, {state})"


def resolve(token: str) -> Optional[Tuple[bytes, str]]:
    """Returns (bytes, mime) behind a live handle, or None once it is revoked."""
    return _REGISTRY.get(token)


def live_count() -> int:
    return len(_REGISTRY)
