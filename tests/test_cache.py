"""Tests for SyncCache: listeners, merges and invalidate-and-refetch."""

from __future__ import annotations

import asyncio

import pytest

from agentsync.cache import QueryKey, SyncCache
from agentsync.models.message import MessageWithParts
from agentsync.models.session import ChannelKey
from tests.conftest import message_info


def _message(msg_id: str, session_id: str = "ses_1") -> MessageWithParts:
    return MessageWithParts.model_validate({"info": message_info(msg_id, session_id=session_id)})


class FakeFetcher:
    def __init__(self, value=None, error: Exception | None = None) -> None:
        self.value = value
        self.error = error
        self.calls: list[QueryKey] = []
        self.gate: asyncio.Event | None = None

    async def fetch(self, key: QueryKey):
        self.calls.append(key)
        value = self.value
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return value


class TestMessageView:
    def test_missing_entry_reads_none(self, cache, channel):
        assert cache.get(channel, "ses_1") is None

    def test_update_notifies_listeners(self, cache, channel):
        seen = []
        cache.subscribe(channel, "ses_1", seen.append)
        cache.update_messages(channel, "ses_1", lambda current: ["a"])
        assert seen == [["a"]]
        assert cache.get(channel, "ses_1") == ["a"]

    def test_identity_merge_is_silent(self, cache, channel):
        """A merge that returns its input notifies nobody."""
        cache.set_messages(channel, "ses_1", ["a"])
        seen = []
        cache.subscribe(channel, "ses_1", seen.append)
        result = cache.update_messages(channel, "ses_1", lambda current: current)
        assert result == ["a"]
        assert seen == []

    def test_none_merge_keeps_entry_missing(self, cache, channel):
        seen = []
        cache.subscribe(channel, "ses_1", seen.append)
        assert cache.update_messages(channel, "ses_1", lambda current: None) is None
        assert not cache.has_query(QueryKey.messages(channel, "ses_1"))
        assert seen == []

    def test_listener_error_does_not_block_others(self, cache, channel):
        seen = []

        def _broken(value):
            raise RuntimeError("boom")

        cache.subscribe(channel, "ses_1", _broken)
        cache.subscribe(channel, "ses_1", seen.append)
        cache.set_messages(channel, "ses_1", ["a"])
        assert seen == [["a"]]

    def test_unsubscribe(self, cache, channel):
        seen = []
        unsubscribe = cache.subscribe(channel, "ses_1", seen.append)
        unsubscribe()
        unsubscribe()
        cache.set_messages(channel, "ses_1", ["a"])
        assert seen == []

    def test_find_message_session(self, cache, channel):
        """Only message lists on the same channel are searched."""
        cache.set_messages(channel, "ses_1", [_message("m1")])
        cache.set_messages(channel, "ses_2", [_message("m2", "ses_2")])
        cache.set_messages(ChannelKey("http://agent.test"), "ses_3", [_message("m3", "ses_3")])
        cache.set_query(QueryKey.todos(channel, "ses_4"), [])

        assert cache.find_message_session(channel, "m2") == "ses_2"
        assert cache.find_message_session(channel, "m3") is None
        assert cache.find_message_session(channel, "m9") is None


class TestInvalidation:
    def test_invalidate_without_fetcher_drops_entry(self, cache, channel):
        cache.set_messages(channel, "ses_1", ["a"])
        cache.invalidate(channel, "ses_1")
        assert cache.get(channel, "ses_1") is None

    async def test_watched_key_is_refetched(self, channel):
        fetcher = FakeFetcher(value=["fresh"])
        cache = SyncCache(fetcher=fetcher)
        seen = []
        cache.subscribe(channel, "ses_1", seen.append)
        cache.set_messages(channel, "ses_1", ["stale"])

        cache.invalidate(channel, "ses_1")
        assert cache.get(channel, "ses_1") is None
        await cache.settle()

        assert fetcher.calls == [QueryKey.messages(channel, "ses_1")]
        assert cache.get(channel, "ses_1") == ["fresh"]
        assert seen == [["stale"], None, ["fresh"]]

    async def test_unwatched_key_is_not_refetched(self, channel):
        """Nobody is listening, so invalidation only drops the entry."""
        fetcher = FakeFetcher(value=["fresh"])
        cache = SyncCache(fetcher=fetcher)
        cache.set_messages(channel, "ses_1", ["stale"])
        cache.invalidate(channel, "ses_1")
        await cache.settle()
        assert fetcher.calls == []
        assert cache.get(channel, "ses_1") is None

    async def test_failed_refetch_leaves_entry_missing(self, channel):
        fetcher = FakeFetcher(error=RuntimeError("server down"))
        cache = SyncCache(fetcher=fetcher)
        cache.subscribe(channel, "ses_1", lambda value: None)
        cache.invalidate(channel, "ses_1")
        await cache.settle()
        assert len(fetcher.calls) == 1
        assert cache.get(channel, "ses_1") is None

    async def test_stale_refetch_is_discarded(self, channel):
        """A refetch started before a newer invalidation does not overwrite it."""
        fetcher = FakeFetcher(value=["old"])
        fetcher.gate = asyncio.Event()
        cache = SyncCache(fetcher=fetcher)
        cache.subscribe(channel, "ses_1", lambda value: None)

        cache.invalidate(channel, "ses_1")
        await asyncio.sleep(0)
        fetcher.value = ["new"]
        cache.invalidate(channel, "ses_1")
        fetcher.gate.set()
        await cache.settle()

        assert len(fetcher.calls) == 2
        assert cache.get(channel, "ses_1") == ["new"]

    async def test_close_cancels_refetches(self, channel):
        fetcher = FakeFetcher(value=["fresh"])
        fetcher.gate = asyncio.Event()
        cache = SyncCache(fetcher=fetcher)
        cache.subscribe(channel, "ses_1", lambda value: None)
        cache.invalidate(channel, "ses_1")
        await asyncio.sleep(0)

        cache.close()
        await cache.settle()
        assert cache.get(channel, "ses_1") is None

    @pytest.mark.parametrize("factory", [QueryKey.sessions, lambda ch: QueryKey.todos(ch, "ses_1")])
    async def test_generic_queries(self, channel, factory):
        key = factory(channel)
        fetcher = FakeFetcher(value={"loaded": True})
        cache = SyncCache()
        cache.attach_fetcher(fetcher)
        cache.subscribe_query(key, lambda value: None)
        cache.invalidate_query(key)
        await cache.settle()
        assert cache.get_query(key) == {"loaded": True}
