"""
Chain Reader: JSON-RPC block, transaction, receipt and log reads.

Speaks plain JSON-RPC 2.0 over httpx. No web3.py dependency.

The reader holds an ordered list of endpoints. Any failed call (timeout,
transport error, HTTP error status, JSON-RPC ``error`` member, malformed
payload) moves to the next endpoint, wrapping around, and replays the same
logical call. Each logical call makes at most ``len(endpoints)`` attempts;
when all of them fail the call raises ChainUnavailableError.

Configuration:
    PAYTRAIL_RPC_URL=https://evm-t3.cronos.org,https://cronos-testnet.drpc.org

Usage:
    async with ChainReader.from_config(config) as reader:
        head = await reader.get_current_block()
        logs = await reader.query_events(head - 100, head, address=token)
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from paytrail.chain.abi import parse_quantity
from paytrail.core.config import Config
from paytrail.core.exceptions import ChainUnavailableError
from paytrail.core.logging import get_logger

logger = get_logger("chain.reader")


class RpcEndpointError(Exception):
    """One endpoint failed one attempt. Internal to the failover loop."""

    def __init__(self, endpoint: str, reason: str) -> None:
        super().__init__(f"{endpoint}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


# ─── Chain data ──────────────────────────────────────────────────────


@dataclass
class Block:
    number: int
    hash: str
    timestamp: datetime
    parent_hash: str = ""

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> Block:
        return cls(
            number=parse_quantity(data["number"]),  # type: ignore[arg-type]
            hash=data.get("hash") or "",
            timestamp=datetime.fromtimestamp(
                parse_quantity(data["timestamp"]),  # type: ignore[arg-type]
                tz=timezone.utc,
            ),
            parent_hash=data.get("parentHash") or "",
        )


@dataclass
class Transaction:
    hash: str
    from_address: str
    to_address: str | None
    value: int
    block_number: int | None = None
    input: str = "0x"

    @property
    def is_mined(self) -> bool:
        return self.block_number is not None

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> Transaction:
        to_address = data.get("to")
        return cls(
            hash=data["hash"],
            from_address=(data.get("from") or "").lower(),
            to_address=to_address.lower() if to_address else None,
            value=parse_quantity(data.get("value")) or 0,
            block_number=parse_quantity(data.get("blockNumber")),
            input=data.get("input") or "0x",
        )


@dataclass
class Log:
    address: str
    topics: list[str]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int
    removed: bool = False

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> Log:
        return cls(
            address=(data.get("address") or "").lower(),
            topics=[t.lower() for t in data.get("topics") or []],
            data=data.get("data") or "0x",
            block_number=parse_quantity(data["blockNumber"]),  # type: ignore[arg-type]
            transaction_hash=data["transactionHash"],
            log_index=parse_quantity(data["logIndex"]),  # type: ignore[arg-type]
            removed=bool(data.get("removed", False)),
        )


@dataclass
class Receipt:
    transaction_hash: str
    status: int
    block_number: int
    block_hash: str
    gas_used: int
    logs: list[Log] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> Receipt:
        return cls(
            transaction_hash=data["transactionHash"],
            status=parse_quantity(data.get("status")) or 0,
            block_number=parse_quantity(data["blockNumber"]),  # type: ignore[arg-type]
            block_hash=data.get("blockHash") or "",
            gas_used=parse_quantity(data.get("gasUsed")) or 0,
            logs=[Log.from_rpc(entry) for entry in data.get("logs") or []],
        )


# ─── Reader ──────────────────────────────────────────────────────────


class ChainReader:
    """
    JSON-RPC reader with sticky multi-endpoint failover.

    The index of the last endpoint that answered is remembered, so once a
    primary goes down later calls start from the healthy fallback instead of
    paying a timeout each time.
    """

    def __init__(
        self,
        rpc_urls: list[str] | tuple[str, ...],
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Args:
            rpc_urls: Ordered JSON-RPC endpoints (primary first)
            timeout: Per-attempt timeout in seconds
            http_client: Shared httpx client (for connection pooling / tests)
        """
        self._rpc_urls: list[str] = [u for u in rpc_urls if u]
        if not self._rpc_urls:
            raise ValueError("ChainReader needs at least one RPC endpoint")
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = False
        self._active_index = 0
        self._request_ids = itertools.count(1)

    @classmethod
    def from_config(
        cls,
        config: Config,
        http_client: httpx.AsyncClient | None = None,
    ) -> ChainReader:
        return cls(config.rpc_urls, timeout=config.rpc_timeout, http_client=http_client)

    @property
    def endpoints(self) -> list[str]:
        return list(self._rpc_urls)

    @property
    def active_endpoint(self) -> str:
        return self._rpc_urls[self._active_index]

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-init HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close owned HTTP client."""
        if self._owns_client and self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> ChainReader:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ─── JSON-RPC with failover ──────────────────────────────────────

    def _advance(self, failed_index: int) -> None:
        # Another coroutine may already have moved past this endpoint
        if self._active_index == failed_index:
            self._active_index = (failed_index + 1) % len(self._rpc_urls)

    async def _call_endpoint(
        self,
        client: httpx.AsyncClient,
        method: str,
        params: list[Any],
        expect: type | tuple[type, ...] | None,
    ) -> Any:
        index = self._active_index
        url = self._rpc_urls[index]
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._request_ids),
        }
        position = f"{index + 1}/{len(self._rpc_urls)}"

        try:
            response = await client.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException:
            reason = "timeout"
        except httpx.HTTPStatusError as e:
            reason = f"HTTP {e.response.status_code}"
        except httpx.HTTPError as e:
            reason = f"transport error: {e}"
        except ValueError:
            reason = "response is not JSON"
        else:
            if not isinstance(body, dict):
                reason = "malformed payload (not an object)"
            elif body.get("error") is not None:
                reason = f"RPC error: {body['error']}"
            elif "result" not in body:
                reason = "malformed payload (no result)"
            elif (
                expect is not None
                and body["result"] is not None
                and not isinstance(body["result"], expect)
            ):
                reason = f"malformed result type {type(body['result']).__name__}"
            else:
                return body["result"]

        logger.warning(f"{method} failed on provider {position} ({url}): {reason}, failing over")
        self._advance(index)
        raise RpcEndpointError(url, reason)

    async def _call(
        self,
        method: str,
        params: list[Any],
        expect: type | tuple[type, ...] | None = None,
    ) -> Any:
        """
        Execute one logical JSON-RPC call across the endpoint ring.

        Returns the ``result`` member (``None`` for a JSON ``null``).

        Raises:
            ChainUnavailableError: every endpoint failed once
        """
        client = await self._get_client()
        attempts = len(self._rpc_urls)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(RpcEndpointError),
                stop=stop_after_attempt(attempts),
                reraise=True,
            ):
                with attempt:
                    return await self._call_endpoint(client, method, params, expect)
        except RpcEndpointError as e:
            logger.error(f"All {attempts} RPC providers failed for {method}: {e}")
            raise ChainUnavailableError(
                f"All {attempts} RPC endpoints failed for {method}",
                method=method,
                attempts=attempts,
                details={"last_error": str(e)},
            ) from e

    # ─── Reads ───────────────────────────────────────────────────────

    async def get_current_block(self) -> int:
        """Latest block number (chain head)."""
        result = await self._call("eth_blockNumber", [], expect=(str, int))
        if result is None:
            raise ChainUnavailableError(
                "eth_blockNumber returned null", method="eth_blockNumber", attempts=1
            )
        return parse_quantity(result)  # type: ignore[return-value]

    async def get_block(self, number: int) -> Block | None:
        """Block header by number, or None if the node doesn't have it."""
        result = await self._call("eth_getBlockByNumber", [hex(number), False], expect=dict)
        return Block.from_rpc(result) if result is not None else None

    async def get_transaction(self, tx_hash: str) -> Transaction | None:
        result = await self._call("eth_getTransactionByHash", [tx_hash], expect=dict)
        return Transaction.from_rpc(result) if result is not None else None

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        """Receipt for a mined transaction; None while not yet mined."""
        result = await self._call("eth_getTransactionReceipt", [tx_hash], expect=dict)
        return Receipt.from_rpc(result) if result is not None else None

    async def query_events(
        self,
        from_block: int,
        to_block: int,
        address: str | None = None,
        topics: list[str | list[str] | None] | None = None,
    ) -> list[Log]:
        """
        Event logs in ``[from_block, to_block]`` matching the filter.

        Logs flagged ``removed`` (reorged out) are dropped.
        """
        log_filter: dict[str, Any] = {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        if address:
            log_filter["address"] = address
        if topics:
            log_filter["topics"] = topics

        result = await self._call("eth_getLogs", [log_filter], expect=list)
        logs = [Log.from_rpc(entry) for entry in result or []]
        return [entry for entry in logs if not entry.removed]
