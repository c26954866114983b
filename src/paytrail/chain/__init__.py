"""Chain access: JSON-RPC reader with failover and ABI helpers."""

from paytrail.chain.abi import (
    FEEDBACK_SUBMITTED_TOPIC,
    TRANSFER_TOPIC,
    event_topic,
)
from paytrail.chain.reader import Block, ChainReader, Log, Receipt, Transaction

__all__ = [
    "ChainReader",
    "Block",
    "Transaction",
    "Receipt",
    "Log",
    "event_topic",
    "TRANSFER_TOPIC",
    "FEEDBACK_SUBMITTED_TOPIC",
]
