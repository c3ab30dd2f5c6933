"""
Scoped job-site credentials.

Credentials travel by value down the call chain of one request and one
pipeline run. They are never assigned to Application, AuditTrail or
VectorStore fields, refuse to be pickled, hide their values from repr, and
are zeroed by ``discard()`` when the automation stage returns.

Usage:
    with credentials:
        outcome = await automation.apply(url, credentials.reveal(), profile, resume)
    # credentials are discarded here, even if apply() raised
"""

from typing import Dict, Optional


class Credentials:
    """Username/password pair held in mutable buffers so they can be zeroed."""

    __slots__ = ("_fields", "_discarded")

    def __init__(self, username: str, password: str, **extra: str) -> None:
        values = {"username": username, "password": password, **extra}
        self._fields: Dict[str, bytearray] = {
            key: bytearray(value.encode("utf-8")) for key, value in values.items()
        }
        self._discarded = False

    @property
    def discarded(self) -> bool:
        return self._discarded

    def reveal(self) -> Dict[str, str]:
        """Return plain values for the single capability call that needs them."""
        if self._discarded:
            raise RuntimeError("Credentials have already been discarded")
        return {key: value.decode("utf-8") for key, value in self._fields.items()}

    def discard(self) -> None:
        """Zero every buffer and drop the references."""
        for buffer in self._fields.values():
            for i in range(len(buffer)):
                buffer[i] = 0
        self._fields.clear()
        self._discarded = True

    def __enter__(self) -> "Credentials":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.discard()

    def __repr__(self) -> str:
        state = "discarded" if self._discarded else "present"
        return f"<Credentials({state})>"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("Credentials cannot be serialized")


def discard_quietly(credentials: Optional[Credentials]) -> None:
    """Discard credentials that may be None or already discarded."""
    if credentials is not None and not credentials.discarded:
        credentials.discard()
