from __future__ import annotations


class FleetAgentError(Exception):
    """Base class for contract violations raised by the agent core."""


class DuplicateName(FleetAgentError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Property {name!r} is already declared")


class UnsupportedKind(FleetAgentError):
    def __init__(self, kind: str | None, identifier: str | None = None) -> None:
        self.kind = kind
        self.identifier = identifier
        target = f" for device {identifier}" if identifier else ""
        super().__init__(f"No reader for device kind {kind!r}{target}")


class StaleHandle(FleetAgentError):
    """Raised when a handle from an earlier link session is used."""

    def __init__(self, identifier: str, bound_at: int, generation: int) -> None:
        self.identifier = identifier
        self.bound_at = bound_at
        self.generation = generation
        super().__init__(
            f"Handle for {identifier} was bound in generation {bound_at}; link is at generation {generation}"
        )


class LinkUnavailable(FleetAgentError):
    """The hardware link is not connected or its driver library is missing."""
