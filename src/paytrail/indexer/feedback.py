"""
Feedback Indexer: FeedbackSubmitted events from the reputation registry.

    event FeedbackSubmitted(
        address indexed subject,
        address indexed submitter,
        string tag,
        uint8 score,
        string comment
    )

The two addresses arrive as topics; ``data`` holds the tag offset, the
score and the comment offset.
"""

from __future__ import annotations

from paytrail.chain.abi import (
    FEEDBACK_SUBMITTED_TOPIC,
    decode_address,
    decode_string,
    decode_uint256,
)
from paytrail.chain.reader import Log
from paytrail.core.exceptions import MalformedEventError
from paytrail.core.types import FeedbackRecord
from paytrail.indexer.base import BaseIndexer

MAX_SCORE = 100


class FeedbackIndexer(BaseIndexer):
    """Appends one FeedbackRecord per event; replays are no-ops."""

    name = "feedback"

    async def fetch_logs(self, from_block: int, to_block: int) -> list[Log]:
        return await self._reader.query_events(
            from_block,
            to_block,
            address=self._config.reputation_registry_address,
            topics=[FEEDBACK_SUBMITTED_TOPIC],
        )

    async def handle_log(self, log: Log) -> bool:
        if len(log.topics) != 3 or log.topics[0] != FEEDBACK_SUBMITTED_TOPIC:
            raise MalformedEventError(
                "Not a FeedbackSubmitted log",
                tx_hash=log.transaction_hash,
                log_index=log.log_index,
            )

        try:
            subject = decode_address(log.topics[1])
            submitter = decode_address(log.topics[2])
            tag = decode_string(log.data, 0)
            score = decode_uint256(log.data, 1)
            comment = decode_string(log.data, 2)
        except ValueError as e:
            raise MalformedEventError(
                f"Undecodable FeedbackSubmitted: {e}",
                tx_hash=log.transaction_hash,
                log_index=log.log_index,
            ) from e

        if score > MAX_SCORE:
            raise MalformedEventError(
                f"Feedback score {score} outside 0-{MAX_SCORE}",
                tx_hash=log.transaction_hash,
                log_index=log.log_index,
            )

        record = FeedbackRecord(
            subject=subject,
            submitter=submitter,
            tag=tag,
            score=score,
            comment=comment,
            tx_hash=log.transaction_hash,
            log_index=log.log_index,
            block_number=log.block_number,
            timestamp=await self.block_timestamp(log.block_number),
        )
        return await self._store.add_feedback(record)
