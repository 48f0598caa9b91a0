"""Boundary Protocols — contracts between core and shell.

Invariants:
    - Core NEVER imports from shell — dependency arrows point inward only
    - The transfer network is reached only through TransferNetwork
    - Implementations provided by shell via dependency injection

Design Decisions:
    - Protocol over ABC: structural subtyping; the HTTP client and the test fake
      share no base class
    - Async in Protocol: implementations do IO; the pure batching/aggregation
      functions that build their inputs are never async
"""

from typing import Protocol

from fee_distributor.core.domain_types import (
    ConfirmationResult,
    IdempotencyKey,
    SequencingHandle,
    TransferPayload,
    TransferRef,
)


class Signer(Protocol):
    """Signing credential as seen by the network client."""
    @property
    def account_id(self) -> str: ...
    def sign(self, message: bytes) -> str: ...


class TransferNetwork(Protocol):
    """External value-transfer network — submit/confirm semantics only."""

    async def get_sequencing_handle(self) -> SequencingHandle: ...

    async def submit_transfer(
        self, payload: TransferPayload, credential: Signer,
    ) -> TransferRef: ...

    async def confirm_transfer(
        self, ref: TransferRef, handle: SequencingHandle, timeout: float,
    ) -> ConfirmationResult: ...

    async def find_transfer(self, key: IdempotencyKey) -> TransferRef | None:
        """Posted transfer carrying this idempotency key, from network history."""
        ...
