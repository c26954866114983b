"""
Tests for ChainReader.

Covers JSON-RPC decoding and multi-endpoint failover.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from fakes import BASE_TIMESTAMP, FakeChain
from paytrail.chain.abi import TRANSFER_TOPIC
from paytrail.chain.reader import ChainReader
from paytrail.core.exceptions import ChainUnavailableError

PRIMARY = "http://primary.test"
FALLBACK = "http://fallback.test"


def _reader(handler, urls=(PRIMARY, FALLBACK)) -> ChainReader:
    return ChainReader(urls, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _ok(request: httpx.Request, result) -> httpx.Response:
    payload = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


class TestFailover:
    @pytest.mark.asyncio
    async def test_primary_answers(self):
        hits = []

        def handler(request):
            hits.append(request.url.host)
            return _ok(request, "0x10")

        reader = _reader(handler)
        assert await reader.get_current_block() == 16
        assert hits == ["primary.test"]
        assert reader.active_endpoint == PRIMARY

    @pytest.mark.asyncio
    async def test_fails_over_on_http_error(self):
        hits = []

        def handler(request):
            hits.append(request.url.host)
            if request.url.host == "primary.test":
                return httpx.Response(503)
            return _ok(request, "0x2a")

        reader = _reader(handler)
        assert await reader.get_current_block() == 42
        assert hits == ["primary.test", "fallback.test"]
        assert reader.active_endpoint == FALLBACK

    @pytest.mark.asyncio
    async def test_failover_is_sticky(self):
        hits = []

        def handler(request):
            hits.append(request.url.host)
            if request.url.host == "primary.test":
                return httpx.Response(502)
            return _ok(request, "0x1")

        reader = _reader(handler)
        await reader.get_current_block()
        await reader.get_current_block()
        await reader.get_current_block()

        assert hits.count("primary.test") == 1
        assert hits.count("fallback.test") == 3

    @pytest.mark.asyncio
    async def test_fails_over_on_timeout(self):
        def handler(request):
            if request.url.host == "primary.test":
                raise httpx.ConnectTimeout("timed out", request=request)
            return _ok(request, "0x5")

        reader = _reader(handler)
        assert await reader.get_current_block() == 5

    @pytest.mark.asyncio
    async def test_fails_over_on_rpc_error_member(self):
        def handler(request):
            payload = json.loads(request.content)
            if request.url.host == "primary.test":
                return httpx.Response(
                    200,
                    json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32000, "message": "busy"}},
                )
            return _ok(request, "0x7")

        reader = _reader(handler)
        assert await reader.get_current_block() == 7

    @pytest.mark.asyncio
    async def test_fails_over_on_malformed_payload(self):
        def handler(request):
            if request.url.host == "primary.test":
                return httpx.Response(200, json=["not", "an", "object"])
            return _ok(request, [])

        reader = _reader(handler)
        assert await reader.query_events(1, 2) == []

    @pytest.mark.asyncio
    async def test_fails_over_on_wrong_result_type(self):
        def handler(request):
            if request.url.host == "primary.test":
                return _ok(request, {"unexpected": "object"})
            return _ok(request, [])

        reader = _reader(handler)
        assert await reader.query_events(1, 2) == []
        assert reader.active_endpoint == FALLBACK

    @pytest.mark.asyncio
    async def test_all_endpoints_failing_raises(self):
        hits = []

        def handler(request):
            hits.append(request.url.host)
            return httpx.Response(500)

        reader = _reader(handler)
        with pytest.raises(ChainUnavailableError) as exc_info:
            await reader.get_current_block()

        # One attempt per endpoint, no more
        assert len(hits) == 2
        assert exc_info.value.attempts == 2
        assert exc_info.value.method == "eth_blockNumber"
        assert exc_info.value.retryable is True

    def test_requires_an_endpoint(self):
        with pytest.raises(ValueError):
            ChainReader([])


class TestReads:
    @pytest.mark.asyncio
    async def test_get_block(self):
        chain = FakeChain(head=20)
        block = await chain.reader().get_block(12)

        assert block is not None
        assert block.number == 12
        assert block.timestamp == datetime.fromtimestamp(BASE_TIMESTAMP + 12, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_unknown_block_is_none(self):
        chain = FakeChain(head=5)
        assert await chain.reader().get_block(99) is None

    @pytest.mark.asyncio
    async def test_receipt_not_mined_is_none(self):
        chain = FakeChain(head=5)
        assert await chain.reader().get_receipt("0xabc") is None

    @pytest.mark.asyncio
    async def test_receipt_decoded(self):
        chain = FakeChain(head=5)
        chain.set_receipt("0xabc", status=0, block=4)

        receipt = await chain.reader().get_receipt("0xabc")
        assert receipt.block_number == 4
        assert receipt.gas_used == 21000
        assert receipt.succeeded is False

    @pytest.mark.asyncio
    async def test_query_events_filters_and_drops_removed(self):
        chain = FakeChain(head=10)
        token = "0x00000000000000000000000000000000000000aa"
        chain.add_transfer(token, "0x" + "1" * 40, "0x" + "2" * 40, 100, block=3, tx_hash="0x01")
        chain.add_transfer(token, "0x" + "1" * 40, "0x" + "2" * 40, 100, block=9, tx_hash="0x02")
        chain.add_log(token, [TRANSFER_TOPIC], "0x", block=4, tx_hash="0x03", removed=True)

        logs = await chain.reader().query_events(1, 5, address=token, topics=[TRANSFER_TOPIC])

        assert [entry.transaction_hash for entry in logs] == ["0x01"]
        assert logs[0].block_number == 3
        assert logs[0].address == token

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self):
        async with ChainReader([PRIMARY]) as reader:
            client = await reader._get_client()
        assert client.is_closed
