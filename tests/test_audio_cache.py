import re

import pytest

from voice_avatar.services.tts.cache import (
    AudioBlob,
    AudioCache,
    FlatAudioStore,
    SqliteAudioStore,
    hash_key,
    tts_cache_key,
)


def test_hash_key_is_base64url_without_padding() -> None:
    key = hash_key("voice-1:Hello there.")

    assert len(key) == 43
    assert re.fullmatch(r"[A-Za-z0-9_-]+", key)
    assert key == hash_key("voice-1:Hello there.")


def test_tts_cache_key_depends_on_voice_and_text() -> None:
    assert tts_cache_key("a", "Hello.") != tts_cache_key("b", "Hello.")
    assert tts_cache_key("a", "Hello.") != tts_cache_key("a", "Hello!")


@pytest.mark.asyncio
async def test_round_trip_through_both_tiers(tmp_path) -> None:
    cache = AudioCache.from_paths(tmp_path / "audio.db", tmp_path / "flat")
    await cache.initialize()
    blob = AudioBlob(b"\x01\x02\x03", "audio/mpeg")

    try:
        assert await cache.get("k1") is None
        await cache.set("k1", blob)
        assert await cache.get("k1") == blob
        assert (tmp_path / "flat" / "k1.json").exists()
    finally:
        await cache.close()


@pytest.mark.asyncio
async def test_entries_are_not_overwritten(tmp_path) -> None:
    cache = AudioCache.from_paths(tmp_path / "audio.db", tmp_path / "flat")
    await cache.initialize()

    try:
        await cache.set("k1", AudioBlob(b"first"))
        await cache.set("k1", AudioBlob(b"second"))
        assert (await cache.get("k1")).data == b"first"
    finally:
        await cache.close()


@pytest.mark.asyncio
async def test_flat_tier_serves_when_database_is_not_ready(tmp_path) -> None:
    flat = FlatAudioStore(tmp_path / "flat")
    flat.set("k2", AudioBlob(b"pcm", "audio/pcm"))

    # never initialized, so only the flat tier answers
    cache = AudioCache(SqliteAudioStore(tmp_path / "audio.db"), flat)

    assert await cache.get("k2") == AudioBlob(b"pcm", "audio/pcm")


@pytest.mark.asyncio
async def test_oversized_entries_skip_the_flat_tier(tmp_path) -> None:
    cache = AudioCache(None, FlatAudioStore(tmp_path / "flat", max_entry_bytes=4))

    await cache.set("big", AudioBlob(b"0123456789"))

    assert await cache.get("big") is None
    assert not (tmp_path / "flat" / "big.json").exists()


class BrokenStore:
    def get(self, key):
        raise OSError("disk gone")

    def set(self, key, blob):
        raise OSError("disk gone")


@pytest.mark.asyncio
async def test_storage_failures_read_as_misses() -> None:
    cache = AudioCache(None, BrokenStore())

    await cache.set("k3", AudioBlob(b"x"))
    assert await cache.get("k3") is None


@pytest.mark.asyncio
async def test_corrupt_flat_record_is_a_miss(tmp_path) -> None:
    directory = tmp_path / "flat"
    directory.mkdir()
    (directory / "bad.json").write_text("{not json", encoding="utf-8")
    cache = AudioCache(None, FlatAudioStore(directory))

    assert await cache.get("bad") is None
