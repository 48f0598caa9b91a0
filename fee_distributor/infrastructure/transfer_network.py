"""HTTP Transfer Network — httpx client for the value-transfer gateway.

Invariants:
    - Connection errors, transport timeouts, 429 and 5xx -> TransientNetworkError
    - Any other 4xx -> RejectedTransferError (never retried)
    - 409 on submit means the idempotency key was already used: the existing
      transfer ref is returned, nothing new is posted
    - confirm_transfer() returns within its timeout: CONFIRMED, REJECTED, or
      TIMED_OUT; it never raises for a slow network
    - Every submission is signed (X-Signature over the exact request body)
      and carries the batch's Idempotency-Key header

Design Decisions:
    - No retry loop here: the Batch Executor owns the retry budget so that a
      resubmission is always preceded by a history lookup
    - Transient errors while polling a submitted transfer are tolerated until
      the deadline: the transfer exists, only its status is unknown
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

import httpx

from fee_distributor.core.domain_types import (
    ConfirmationResult,
    IdempotencyKey,
    SequencingHandle,
    TransferPayload,
    TransferRef,
    TransferStatus,
)
from fee_distributor.core.errors import RejectedTransferError, TransientNetworkError
from fee_distributor.core.repository_protocols import Signer

logger = logging.getLogger(__name__)

_REJECTED_STATES = ("rejected", "failed")
_EXPIRED_STATES = ("expired", "dropped")


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def encode_payload(payload: TransferPayload, account_id: str) -> bytes:
    """Canonical request body; the signature covers exactly these bytes."""
    body = {
        "idempotency_key": payload.idempotency_key,
        "sequencing_handle": payload.handle.value,
        "source_account": account_id,
        "instructions": [
            {"recipient": i.recipient, "units": i.units}
            for i in payload.instructions
        ],
    }
    return json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")


class HttpTransferNetwork:
    """TransferNetwork over the gateway's REST API."""

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 1.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.poll_interval_seconds = poll_interval_seconds
        self.client = client or httpx.AsyncClient(
            base_url=self.endpoint, timeout=timeout_seconds,
        )
        self._sleep = sleep

    async def aclose(self) -> None:
        await self.client.aclose()

    # ─── Contract ───────────────────────────────────────────────

    async def get_sequencing_handle(self) -> SequencingHandle:
        response = await self._request("GET", "/v1/sequencing-handle", "get_handle")
        self._raise_for_status(response, "get_handle")
        data = response.json()
        return SequencingHandle(
            value=data["handle"],
            expires_at=_parse_timestamp(data.get("expires_at")),
        )

    async def submit_transfer(
        self, payload: TransferPayload, credential: Signer,
    ) -> TransferRef:
        body = encode_payload(payload, credential.account_id)
        response = await self._request(
            "POST", "/v1/transfers", "submit",
            content=body,
            headers={
                "Content-Type": "application/json",
                "Idempotency-Key": payload.idempotency_key,
                "X-Signature": credential.sign(body),
                "X-Account-Id": credential.account_id,
            },
        )
        if response.status_code == 409:
            ref = self._json(response).get("transfer_ref")
            if ref:
                logger.warning(
                    "Idempotency key already used; reusing posted transfer",
                    extra={"batch_key": payload.idempotency_key, "transfer_ref": ref},
                )
                return TransferRef(ref)
        self._raise_for_status(response, "submit")
        return TransferRef(response.json()["transfer_ref"])

    async def confirm_transfer(
        self, ref: TransferRef, handle: SequencingHandle, timeout: float,
    ) -> ConfirmationResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status, reason = await self._poll_status(ref)
            if status == "confirmed":
                return ConfirmationResult(TransferStatus.CONFIRMED)
            if status in _REJECTED_STATES:
                return ConfirmationResult(TransferStatus.REJECTED, reason or status)
            if status in _EXPIRED_STATES:
                return ConfirmationResult(TransferStatus.TIMED_OUT, reason or status)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return ConfirmationResult(
                    TransferStatus.TIMED_OUT, f"not confirmed within {timeout}s",
                )
            await self._sleep(min(self.poll_interval_seconds, remaining))

    async def find_transfer(self, key: IdempotencyKey) -> TransferRef | None:
        response = await self._request(
            "GET", "/v1/transfers", "find", params={"idempotency_key": key},
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "find")
        for item in response.json().get("transfers", []):
            if item.get("status") == "confirmed" and item.get("transfer_ref"):
                return TransferRef(item["transfer_ref"])
        return None

    # ─── HTTP plumbing ──────────────────────────────────────────

    async def _poll_status(self, ref: TransferRef) -> tuple[str, str | None]:
        try:
            response = await self._request("GET", f"/v1/transfers/{ref}", "confirm")
            if response.status_code == 404:
                return "pending", None
            self._raise_for_status(response, "confirm")
        except TransientNetworkError as e:
            logger.warning(
                f"Status poll failed, will poll again: {e.message}",
                extra={"transfer_ref": ref},
            )
            return "pending", None
        data = response.json()
        return str(data.get("status", "pending")).lower(), data.get("reason")

    async def _request(
        self, method: str, path: str, operation: str, **kwargs,
    ) -> httpx.Response:
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"timeout: {e}", operation) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"connection error: {e}", operation) from e

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        code = response.status_code
        if code < 400:
            return
        if code == 429 or code >= 500:
            raise TransientNetworkError(f"HTTP {code}", operation)
        reason = self._json(response).get("reason") or f"HTTP {code}"
        raise RejectedTransferError(f"{operation}: {reason}")

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
