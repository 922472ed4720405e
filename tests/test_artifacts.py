"""Tests for phase-scoped artifact propagation."""

import os
from datetime import timedelta

import pytest

from buildflow.pipeline.artifacts import ArtifactPropagator
from buildflow.utils import utc_now

PHASES = ["ci", "artifacts", "publish"]


@pytest.fixture
def propagator(tmp_path):
    return ArtifactPropagator(tmp_path / "store", "run-1", PHASES)


@pytest.fixture
def producer(tmp_path):
    root = tmp_path / "producer"
    (root / "public").mkdir(parents=True)
    (root / "public" / "index.html").write_text("<html/>")
    (root / "x86_64-linux-musl").write_text("elf")
    return root


class TestPublish:
    """Test publication and sealing."""

    @pytest.mark.asyncio
    async def test_publish_copies_present_paths(self, propagator, producer):
        artifact = await propagator.publish(
            "artifacts", "artifacts", producer, ["x86_64-linux-musl", "public", "missing.deb"]
        )
        assert artifact.paths == ("x86_64-linux-musl", "public")
        assert (artifact.root / "public" / "index.html").exists()

    @pytest.mark.asyncio
    async def test_nothing_present_publishes_nothing(self, propagator, tmp_path):
        (tmp_path / "empty").mkdir()
        assert await propagator.publish("a", "ci", tmp_path / "empty", ["public"]) is None

    @pytest.mark.asyncio
    async def test_pending_until_sealed(self, propagator, producer):
        await propagator.publish("artifacts", "artifacts", producer, ["public"])
        assert propagator.fetch("publish") == set()
        await propagator.seal_phase("artifacts", ok=True)
        assert {a.stage_name for a in propagator.fetch("publish")} == {"artifacts"}

    @pytest.mark.asyncio
    async def test_failed_phase_drops_artifacts(self, propagator, producer):
        artifact = await propagator.publish("artifacts", "artifacts", producer, ["public"])
        await propagator.seal_phase("artifacts", ok=False)
        assert propagator.fetch("publish") == set()
        assert not artifact.root.exists()

    @pytest.mark.asyncio
    async def test_symlinks_are_dereferenced(self, propagator, tmp_path):
        """Test that a 'result' style symlink is stored as real content."""
        root = tmp_path / "producer"
        (root / "nix-store" / "book").mkdir(parents=True)
        (root / "nix-store" / "book" / "index.html").write_text("book")
        os.symlink(root / "nix-store" / "book", root / "public")

        artifact = await propagator.publish("book", "ci", root, ["public"])
        stored = artifact.root / "public"
        assert stored.is_dir() and not stored.is_symlink()
        assert (stored / "index.html").read_text() == "book"


class TestVisibility:
    """Test that artifacts only flow to strictly later phases."""

    @pytest.mark.asyncio
    async def test_not_visible_to_same_or_earlier_phase(self, propagator, producer):
        await propagator.publish("artifacts", "artifacts", producer, ["public"])
        await propagator.seal_phase("artifacts", ok=True)
        assert propagator.fetch("artifacts") == set()
        assert propagator.fetch("ci") == set()

    @pytest.mark.asyncio
    async def test_name_filter(self, propagator, producer):
        await propagator.publish("build-a", "ci", producer, ["public"])
        await propagator.publish("build-b", "ci", producer, ["x86_64-linux-musl"])
        await propagator.seal_phase("ci", ok=True)
        assert {a.stage_name for a in propagator.fetch("publish", ["build-b"])} == {"build-b"}
        assert propagator.fetch("publish", []) == set()

    @pytest.mark.asyncio
    async def test_materialize_into_consumer(self, propagator, producer, tmp_path):
        await propagator.publish("artifacts", "artifacts", producer, ["public"])
        await propagator.seal_phase("artifacts", ok=True)
        consumer = tmp_path / "consumer"
        paths = await propagator.materialize(propagator.fetch("publish"), consumer)
        assert paths == ["public"]
        assert (consumer / "public" / "index.html").read_text() == "<html/>"

    @pytest.mark.asyncio
    async def test_expired_artifacts_are_not_fetched(self, tmp_path, producer):
        propagator = ArtifactPropagator(tmp_path / "store", "run-1", PHASES, default_expiry=timedelta(hours=1))
        artifact = await propagator.publish("artifacts", "artifacts", producer, ["public"])
        await propagator.seal_phase("artifacts", ok=True)

        expired = await propagator.expire(now=utc_now() + timedelta(hours=2))
        assert expired == [artifact]
        assert propagator.fetch("publish") == set()
        assert not artifact.root.exists()


class TestExport:
    """Test terminal-phase export and cleanup."""

    @pytest.mark.asyncio
    async def test_only_terminal_phase_is_exported(self, propagator, producer, tmp_path):
        await propagator.publish("artifacts", "artifacts", producer, ["x86_64-linux-musl"])
        await propagator.seal_phase("artifacts", ok=True)
        await propagator.publish("pages", "publish", producer, ["public"])
        await propagator.seal_phase("publish", ok=True)

        out = tmp_path / "out"
        assert await propagator.export(out) == ["public"]
        assert (out / "public" / "index.html").exists()
        assert not (out / "x86_64-linux-musl").exists()

    @pytest.mark.asyncio
    async def test_discard_removes_run_storage(self, propagator, producer):
        await propagator.publish("artifacts", "artifacts", producer, ["public"])
        await propagator.seal_phase("artifacts", ok=True)
        await propagator.discard()
        assert propagator.visible == []
        assert not propagator.run_root.exists()
