"""Tests for cache key resolution, the lock manager and LocalCacheStore."""

import asyncio
import time

import pytest

from buildflow.cache import (
    DEFAULT_KEY,
    InMemoryLockManager,
    LocalCacheStore,
    expand_variables,
    resolve_cache_key,
    sanitize_key,
)
from buildflow.types import CachePolicy, CacheSpec


class TestCacheKeys:
    """Test cache key resolution."""

    def test_expand_variables(self):
        assert expand_variables("$TOOLCHAIN-${TARGET}", {"TOOLCHAIN": "nightly", "TARGET": "musl"}) == "nightly-musl"
        assert expand_variables("cache-$MISSING", {}) == "cache-"

    def test_sanitize(self):
        assert sanitize_key("feature/x y") == "feature-x-y"
        assert sanitize_key("..") == DEFAULT_KEY
        assert sanitize_key("") == DEFAULT_KEY

    def test_literal_key(self, tmp_path):
        assert resolve_cache_key(CacheSpec(key="nix", paths=("target",)), {}, tmp_path) == "nix"

    def test_templated_key(self, tmp_path):
        spec = CacheSpec(key="$CI_COMMIT_REF_SLUG-cargo", paths=("target",))
        assert resolve_cache_key(spec, {"CI_COMMIT_REF_SLUG": "dev"}, tmp_path) == "dev-cargo"

    def test_files_key_follows_content(self, source_dir):
        spec = CacheSpec(paths=("target",), key_files=("Cargo.lock",), prefix="cargo")
        first = resolve_cache_key(spec, {}, source_dir)
        assert first.startswith("cargo-")
        assert resolve_cache_key(spec, {}, source_dir) == first

        (source_dir / "Cargo.lock").write_text("lock-v2")
        assert resolve_cache_key(spec, {}, source_dir) != first

    def test_files_key_without_files_falls_back(self, tmp_path):
        spec = CacheSpec(paths=("target",), key_files=("Cargo.lock",), prefix="cargo")
        assert resolve_cache_key(spec, {}, tmp_path) == f"cargo-{DEFAULT_KEY}"

    def test_policy_directions(self):
        assert CachePolicy.PULL.restores and not CachePolicy.PULL.saves
        assert CachePolicy.PUSH.saves and not CachePolicy.PUSH.restores
        assert CachePolicy.PULL_PUSH.restores and CachePolicy.PULL_PUSH.saves


class TestInMemoryLockManager:
    """Test keyed locking."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        manager = InMemoryLockManager()
        result = await manager.acquire(["nix"], "run-1/ci")
        assert result.success
        info = await manager.get_lock_info("nix")
        assert info.holder_id == "run-1/ci"
        assert await manager.release(["nix"], "run-1/ci")
        assert await manager.get_lock_info("nix") is None

    @pytest.mark.asyncio
    async def test_timeout_reports_holder(self):
        manager = InMemoryLockManager()
        await manager.acquire(["nix"], "run-1/ci")
        result = await manager.acquire(["nix"], "run-2/ci", timeout=0.05)
        assert not result.success
        assert result.failed_locks == {"nix": "run-1/ci"}

    @pytest.mark.asyncio
    async def test_same_key_writers_are_serialized(self):
        manager = InMemoryLockManager()
        order = []

        async def writer(name):
            async with manager.lock(["k1"], name):
                order.append(f"{name}:start")
                await asyncio.sleep(0.01)
                order.append(f"{name}:end")

        await asyncio.gather(writer("a"), writer("b"))
        assert order in (
            ["a:start", "a:end", "b:start", "b:end"],
            ["b:start", "b:end", "a:start", "a:end"],
        )

    @pytest.mark.asyncio
    async def test_release_by_other_holder_is_refused(self):
        manager = InMemoryLockManager()
        await manager.acquire(["a", "b"], "holder")
        assert not await manager.release(["a"], "intruder")
        assert (await manager.get_lock_info("a")).holder_id == "holder"
        assert await manager.release(["a", "b"], "holder")


class TestLocalCacheStore:
    """Test LocalCacheStore."""

    @pytest.fixture
    def store(self, tmp_path):
        return LocalCacheStore(tmp_path / "cache")

    @pytest.fixture
    def workdir(self, tmp_path):
        root = tmp_path / "work"
        (root / "target" / "release").mkdir(parents=True)
        (root / "target" / "release" / "conduit").write_text("binary")
        (root / ".gitlab-ci.d").mkdir()
        (root / ".gitlab-ci.d" / "cargo.toml").write_text("[registry]")
        return root

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, store, tmp_path):
        assert await store.restore("nix", tmp_path / "elsewhere") is None

    @pytest.mark.asyncio
    async def test_save_then_restore(self, store, workdir, tmp_path):
        entry = await store.save("nix", ["target", ".gitlab-ci.d"], workdir)
        assert entry.paths == ("target", ".gitlab-ci.d")
        assert entry.size_bytes > 0

        other = tmp_path / "other"
        restored = await store.restore("nix", other)
        assert restored == ("target", ".gitlab-ci.d")
        assert (other / "target" / "release" / "conduit").read_text() == "binary"
        assert (other / ".gitlab-ci.d" / "cargo.toml").exists()

        looked_up = await store.lookup("nix")
        assert looked_up.last_used_at is not None

    @pytest.mark.asyncio
    async def test_missing_paths_are_left_out(self, store, workdir):
        entry = await store.save("nix", ["target", "does-not-exist"], workdir)
        assert entry.paths == ("target",)

    @pytest.mark.asyncio
    async def test_nothing_to_save(self, store, tmp_path):
        (tmp_path / "empty").mkdir()
        assert await store.save("nix", ["target"], tmp_path / "empty") is None
        assert await store.lookup("nix") is None

    @pytest.mark.asyncio
    async def test_latest_write_wins(self, store, workdir, tmp_path):
        await store.save("nix", ["target"], workdir)
        (workdir / "target" / "release" / "conduit").write_text("binary-v2")
        await store.save("nix", ["target"], workdir)

        other = tmp_path / "other"
        await store.restore("nix", other)
        assert (other / "target" / "release" / "conduit").read_text() == "binary-v2"
        assert len(await store.entries()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_same_key_writes_leave_one_complete_entry(self, store, tmp_path):
        """Test that interleaved writers never mix their files."""
        a = tmp_path / "a"
        b = tmp_path / "b"
        for root, marker in ((a, "A"), (b, "B")):
            (root / "target").mkdir(parents=True)
            for i in range(20):
                (root / "target" / f"f{i}").write_text(marker)

        await asyncio.gather(store.save("k1", ["target"], a), store.save("k1", ["target"], b))

        restored = tmp_path / "restored"
        await store.restore("k1", restored)
        markers = {p.read_text() for p in (restored / "target").iterdir()}
        assert markers in ({"A"}, {"B"})
        assert not any((store.tmp_dir).iterdir())

    @pytest.mark.asyncio
    async def test_restore_overwrites_stale_files(self, store, workdir, tmp_path):
        await store.save("nix", ["target"], workdir)
        other = tmp_path / "other"
        (other / "target" / "release").mkdir(parents=True)
        (other / "target" / "release" / "conduit").write_text("stale")
        await store.restore("nix", other)
        assert (other / "target" / "release" / "conduit").read_text() == "binary"

    @pytest.mark.asyncio
    async def test_delete(self, store, workdir):
        await store.save("nix", ["target"], workdir)
        assert await store.delete("nix")
        assert not await store.delete("nix")
        assert await store.lookup("nix") is None

    @pytest.mark.asyncio
    async def test_prune_keeps_most_recently_used(self, store, workdir, tmp_path):
        for key in ("old", "mid", "new"):
            await store.save(key, ["target"], workdir)
            await asyncio.sleep(0.01)
        await store.restore("old", tmp_path / "touch")

        evicted = await store.prune(2)
        assert evicted == ["mid"]
        assert sorted(e.key for e in await store.entries()) == ["new", "old"]

    @pytest.mark.asyncio
    async def test_prune_rejects_negative(self, store):
        with pytest.raises(ValueError):
            await store.prune(-1)

    @pytest.mark.asyncio
    async def test_blocking_work_leaves_loop_running(self, store, workdir, monkeypatch):
        """Test that a slow copy does not stall other coroutines."""
        real_stage = store._stage

        def slow_stage(source, present, staging):
            time.sleep(0.3)
            return real_stage(source, present, staging)

        monkeypatch.setattr(store, "_stage", slow_stage)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        ticking = asyncio.ensure_future(ticker())
        try:
            await store.save("nix", ["target"], workdir)
        finally:
            ticking.cancel()
        assert ticks > 5

    @pytest.mark.asyncio
    async def test_cancelled_save_removes_staging(self, store, workdir, monkeypatch):
        """Test that a save cancelled mid-copy leaves nothing behind."""
        started = asyncio.Event()
        loop = asyncio.get_running_loop()
        real_stage = store._stage

        def slow_stage(source, present, staging):
            size = real_stage(source, present, staging)
            loop.call_soon_threadsafe(started.set)
            time.sleep(0.3)
            return size

        monkeypatch.setattr(store, "_stage", slow_stage)
        task = asyncio.ensure_future(store.save("nix", ["target"], workdir))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        deadline = time.monotonic() + 5
        while any(store.tmp_dir.iterdir()) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        assert not any(store.tmp_dir.iterdir())
        assert await store.lookup("nix") is None

    @pytest.mark.asyncio
    async def test_close(self, store, workdir):
        await store.save("nix", ["target"], workdir)
        await store.close()
        with pytest.raises(RuntimeError):
            await store.lookup("nix")
