"""
Cursor-based block range indexer.

Each indexer owns one cursor (the last fully processed block). A run:

1. skips if a run is already in progress (in-process flag plus a storage
   lock, so separate workers exclude each other too);
2. plans ``[cursor + 1, min(cursor + max_blocks_per_run, head)]``;
3. fetches the range's events and handles them in block order, upserting
   by natural key;
4. counts and logs per-event failures without aborting the batch;
5. advances the cursor to the end of the range.

If the chain or the store fails before step 5 the run raises and the cursor
stays where it was; replaying the range is safe because every write is
idempotent.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from paytrail.chain.reader import ChainReader, Log
from paytrail.core.config import Config
from paytrail.core.exceptions import MalformedEventError
from paytrail.core.logging import get_logger
from paytrail.ledger.lock import LockService
from paytrail.ledger.store import LedgerStore
from paytrail.resilience.retry import is_transient_error

RUN_LOCK_TTL = 300


@dataclass
class IndexerRunResult:
    """Outcome of one indexer run."""

    indexer: str
    skipped: bool = False
    from_block: int | None = None
    to_block: int | None = None
    events: int = 0
    indexed: int = 0
    ignored: int = 0
    failed: int = 0
    duration_ms: int = 0

    @property
    def blocks_processed(self) -> int:
        if self.from_block is None or self.to_block is None:
            return 0
        return self.to_block - self.from_block + 1


class BaseIndexer(ABC):
    """
    Base class for block range indexers.

    Subclasses fetch their logs and turn each one into ledger writes.
    ``handle_log`` returns True when it wrote something and False when the
    log was irrelevant; raising MalformedEventError (or anything else)
    marks the event as failed.
    """

    name: str = "indexer"

    def __init__(
        self,
        reader: ChainReader,
        store: LedgerStore,
        config: Config,
    ) -> None:
        self._reader = reader
        self._store = store
        self._config = config
        self._locks = LockService(store.storage)
        self._running = False
        self._block_times: dict[int, datetime] = {}
        self._logger = get_logger(f"indexer.{self.name}")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def lock_resource(self) -> str:
        return f"indexer:{self.name}"

    # ─── Subclass hooks ──────────────────────────────────────────────

    @abstractmethod
    async def fetch_logs(self, from_block: int, to_block: int) -> list[Log]:
        """Logs to process in the range, in any order."""

    @abstractmethod
    async def handle_log(self, log: Log) -> bool:
        """Decode and persist one log. Returns False if it was not relevant."""

    async def prepare(self) -> None:
        """Per-run setup before logs are handled."""

    # ─── Cursor ──────────────────────────────────────────────────────

    async def get_cursor(self) -> int | None:
        cursor = await self._store.get_cursor(self.name)
        return cursor.last_block if cursor else None

    async def _initial_cursor(self, head: int) -> int:
        if self._config.start_block is not None:
            return self._config.start_block - 1
        return max(0, head - self._config.initial_lookback_blocks)

    async def resync(self, block: int) -> None:
        """Rewind (or move) the cursor explicitly. The next run starts at block + 1."""
        await self._store.set_cursor(self.name, block)
        self._logger.warning(f"Cursor for {self.name} reset to block {block}")

    # ─── Helpers ─────────────────────────────────────────────────────

    async def block_timestamp(self, block_number: int) -> datetime:
        """Block time, cached for the duration of a run."""
        cached = self._block_times.get(block_number)
        if cached is not None:
            return cached

        block = await self._reader.get_block(block_number)
        if block is None:
            raise MalformedEventError(f"Block {block_number} not found")

        self._block_times[block_number] = block.timestamp
        return block.timestamp

    # ─── Run ─────────────────────────────────────────────────────────

    async def run(self) -> IndexerRunResult:
        """Process the next block range. See module docstring."""
        result = IndexerRunResult(indexer=self.name)

        if self._running:
            self._logger.info(f"{self.name} indexer already running, skipping")
            result.skipped = True
            return result

        self._running = True
        token = None
        try:
            token = await self._locks.acquire(self.lock_resource, ttl=RUN_LOCK_TTL)
            if token is None:
                self._logger.info(f"{self.name} indexer locked by another worker, skipping")
                result.skipped = True
                return result
            return await self._run_locked(result)
        finally:
            if token is not None:
                await self._locks.release(self.lock_resource, token)
            self._running = False
            self._block_times.clear()

    async def _run_locked(self, result: IndexerRunResult) -> IndexerRunResult:
        started = time.monotonic()

        head = await self._reader.get_current_block()
        cursor = await self.get_cursor()
        if cursor is None:
            cursor = await self._initial_cursor(head)

        from_block = cursor + 1
        to_block = min(cursor + self._config.max_blocks_per_run, head)
        if from_block > to_block:
            self._logger.debug(f"{self.name}: no new blocks (cursor={cursor}, head={head})")
            return result

        result.from_block = from_block
        result.to_block = to_block
        self._logger.info(f"{self.name} indexer run: blocks {from_block}-{to_block}")

        await self.prepare()
        logs = await self.fetch_logs(from_block, to_block)
        logs.sort(key=lambda entry: (entry.block_number, entry.log_index))
        result.events = len(logs)

        for entry in logs:
            try:
                if await self.handle_log(entry):
                    result.indexed += 1
                else:
                    result.ignored += 1
            except MalformedEventError as e:
                result.failed += 1
                self._logger.warning(
                    f"{self.name}: malformed event {entry.transaction_hash}:{entry.log_index}: "
                    f"{e.message}"
                )
            except Exception as e:
                # Chain or store outage: abort before the cursor moves
                if is_transient_error(e):
                    raise
                result.failed += 1
                self._logger.warning(
                    f"{self.name}: failed to process {entry.transaction_hash}:{entry.log_index}: {e}"
                )

        await self._store.set_cursor(self.name, to_block)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._logger.info(
            f"{self.name} indexer done: indexed={result.indexed} ignored={result.ignored} "
            f"failed={result.failed} duration_ms={result.duration_ms}"
        )
        return result
