"""Abstract base class for the call-placing collaborator."""

from __future__ import annotations

from abc import ABC, abstractmethod

from outreach_orchestrator.core.models import PlaceAttemptInstruction, PlacementReceipt


class CallPlacer(ABC):
    """Hands a place-attempt instruction to whatever actually dials.

    Placement is a request, not a guarantee: the outcome arrives later through
    the session callbacks.
    """

    name: str = "unknown"

    @abstractmethod
    async def place(self, instruction: PlaceAttemptInstruction) -> PlacementReceipt:
        """Submit the instruction. Raises ProviderError on failure."""
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        """Clean up any resources (HTTP sessions, etc.)."""
        pass
