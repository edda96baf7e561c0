"""Tests for the file metadata cache and thumbnail resolution."""
import asyncio

import aiohttp
import pytest

from klipper_overlay import MetadataCache, MoonrakerError, resolve_thumbnail

BENCHY_METADATA = {
    "estimated_time": 3600,
    "thumbnails": [
        {"width": 32, "height": 32, "relative_path": ".thumbs/benchy-32x32.png"},
        {"width": 300, "height": 300, "relative_path": ".thumbs/benchy-300x300.png"},
    ],
}


class TestMetadataCache:
    @pytest.mark.asyncio
    async def test_second_lookup_within_ttl_is_cached(self, mock_client, clock):
        mock_client.file_metadata.return_value = {"estimated_time": 100}
        cache = MetadataCache(mock_client, ttl=30, clock=clock)

        first = await cache.get("benchy.gcode")
        clock.advance(29.9)
        second = await cache.get("benchy.gcode")

        assert second is first
        assert mock_client.file_metadata.await_count == 1

    @pytest.mark.asyncio
    async def test_refetches_after_ttl(self, mock_client, clock):
        mock_client.file_metadata.side_effect = [
            {"estimated_time": 100},
            {"estimated_time": 200},
        ]
        cache = MetadataCache(mock_client, ttl=30, clock=clock)

        await cache.get("benchy.gcode")
        clock.advance(30)
        refreshed = await cache.get("benchy.gcode")

        assert refreshed == {"estimated_time": 200}
        assert mock_client.file_metadata.await_count == 2

    @pytest.mark.asyncio
    async def test_passes_metadata_timeout(self, mock_client, clock):
        mock_client.file_metadata.return_value = {"estimated_time": 1}
        cache = MetadataCache(mock_client, timeout=3, clock=clock)
        await cache.get("dir/part.gcode")
        mock_client.file_metadata.assert_awaited_once_with("dir/part.gcode", timeout=3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            aiohttp.ClientConnectionError("refused"),
            asyncio.TimeoutError(),
            MoonrakerError("HTTP 404", 404),
        ],
    )
    async def test_fetch_failure_returns_none_and_is_not_cached(
        self, mock_client, clock, error
    ):
        mock_client.file_metadata.side_effect = [error, {"estimated_time": 5}]
        cache = MetadataCache(mock_client, clock=clock)

        assert await cache.get("benchy.gcode") is None
        assert len(cache) == 0
        assert await cache.get("benchy.gcode") == {"estimated_time": 5}

    @pytest.mark.asyncio
    async def test_missing_metadata_returns_none(self, mock_client, clock):
        cache = MetadataCache(mock_client, clock=clock)
        assert await cache.get("benchy.gcode") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_no_filename_never_fetches(self, mock_client, clock):
        cache = MetadataCache(mock_client, clock=clock)
        assert await cache.get(None) is None
        assert await cache.get("") is None
        mock_client.file_metadata.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_keys_are_case_sensitive(self, mock_client, clock):
        mock_client.file_metadata.return_value = {"estimated_time": 1}
        cache = MetadataCache(mock_client, clock=clock)
        await cache.get("Benchy.gcode")
        await cache.get("benchy.gcode")
        assert mock_client.file_metadata.await_count == 2

    @pytest.mark.asyncio
    async def test_lru_cap_evicts_least_recently_used(self, mock_client, clock):
        mock_client.file_metadata.side_effect = lambda name, timeout: {"name": name}
        cache = MetadataCache(mock_client, max_entries=2, clock=clock)

        await cache.get("a.gcode")
        await cache.get("b.gcode")
        await cache.get("a.gcode")  # refresh a
        await cache.get("c.gcode")  # evicts b

        assert len(cache) == 2
        assert cache.peek("a.gcode") == {"name": "a.gcode"}
        assert cache.peek("b.gcode") is None
        assert cache.peek("c.gcode") == {"name": "c.gcode"}

    @pytest.mark.asyncio
    async def test_zero_cap_is_unbounded(self, mock_client, clock):
        mock_client.file_metadata.side_effect = lambda name, timeout: {"name": name}
        cache = MetadataCache(mock_client, max_entries=0, clock=clock)
        for i in range(300):
            await cache.get(f"part-{i}.gcode")
        assert len(cache) == 300


class TestResolveThumbnail:
    def test_picks_last_entry_relative_to_job_directory(self):
        ref = resolve_thumbnail(BENCHY_METADATA, "boats/benchy.gcode")
        assert ref == "/thumbnail/boats/.thumbs/benchy-300x300.png"

    def test_job_at_root(self):
        ref = resolve_thumbnail(BENCHY_METADATA, "benchy.gcode")
        assert ref == "/thumbnail/.thumbs/benchy-300x300.png"

    def test_path_is_percent_encoded(self):
        metadata = {"thumbnails": [{"relative_path": ".thumbs/my part.png"}]}
        ref = resolve_thumbnail(metadata, "my stuff/my part.gcode")
        assert ref == "/thumbnail/my%20stuff/.thumbs/my%20part.png"

    def test_inline_data_returned_directly(self):
        metadata = {"thumbnails": [{"data": "data:image/png;base64,AAAA", "width": 32}]}
        assert resolve_thumbnail(metadata, "benchy.gcode") == "data:image/png;base64,AAAA"

    @pytest.mark.parametrize(
        "metadata",
        [None, {}, {"thumbnails": []}, {"thumbnails": "nope"}, {"thumbnails": [{"width": 32}]}],
    )
    def test_no_usable_thumbnail(self, metadata):
        assert resolve_thumbnail(metadata, "benchy.gcode") is None
