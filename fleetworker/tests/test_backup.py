from __future__ import annotations

import asyncio
import zipfile
from io import BytesIO

import pytest

from fleetworker.backup import tenant_dir_name
from fleetworker.registry import Guard
from fleetworker.store import SessionBackup


def _seed_workdir(harness, tenant: str) -> None:
    workdir = harness.backups.workdir(tenant)
    (workdir / "cache").mkdir(parents=True)
    (workdir / "channel.session").write_bytes(b"identity")
    (workdir / "cache" / "peers.json").write_text("[]")


@pytest.mark.anyio
async def test_save_upserts_single_row_and_restores_tree(harness) -> None:
    _seed_workdir(harness, "t1")

    assert await harness.backups.save("t1") is True
    assert await harness.backups.save("t1") is True

    assert list(harness.store.rows) == ["t1"]
    row = harness.store.rows["t1"]
    assert "device_name" in row.device_info
    with zipfile.ZipFile(BytesIO(row.blob)) as archive:
        assert sorted(archive.namelist()) == ["cache/peers.json", "channel.session"]

    await harness.backups.discard_workdir("t1")
    assert not harness.backups.has_workdir("t1")
    assert await harness.backups.restore("t1") is True
    assert (harness.backups.workdir("t1") / "channel.session").read_bytes() == b"identity"
    assert list(harness.root.joinpath("scratch").iterdir()) == []


@pytest.mark.anyio
async def test_concurrent_save_is_a_noop(harness) -> None:
    _seed_workdir(harness, "t1")
    harness.store.upsert_gate = asyncio.Event()

    first = asyncio.create_task(harness.backups.save("t1"))
    while harness.store.upserts == 0:
        await asyncio.sleep(0.01)

    assert await harness.backups.save("t1") is False

    harness.store.upsert_gate.set()
    assert await first is True
    assert harness.store.upserts == 1
    assert not harness.registry.is_held("t1", Guard.SAVING)


@pytest.mark.anyio
async def test_failed_save_cleans_scratch_and_releases_guard(harness) -> None:
    _seed_workdir(harness, "t1")
    harness.store.upsert_error = ConnectionError("db down")

    with pytest.raises(ConnectionError):
        await harness.backups.save("t1")

    assert list(harness.root.joinpath("scratch").iterdir()) == []
    assert not harness.registry.is_held("t1", Guard.SAVING)
    assert harness.store.rows == {}


@pytest.mark.anyio
async def test_restore_without_row_reports_no_backup(harness) -> None:
    assert await harness.backups.restore("t2") is False
    assert not harness.backups.has_workdir("t2")


def test_tenant_dir_name_rejects_traversal() -> None:
    assert tenant_dir_name("tenant-1") == "tenant-1"
    with pytest.raises(ValueError):
        tenant_dir_name("../etc")
    with pytest.raises(ValueError):
        tenant_dir_name("a/b")


@pytest.mark.anyio
async def test_failed_restore_leaves_no_partial_workdir(harness) -> None:
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, mode="w") as archive:
        archive.writestr("channel.session", b"identity")
        archive.writestr("../escape", b"x")
    harness.store.rows["t1"] = SessionBackup(tenant_id="t1", blob=buffer.getvalue(), device_info={})

    with pytest.raises(ValueError):
        await harness.backups.restore("t1")

    assert not harness.backups.has_workdir("t1")
    assert list(harness.root.joinpath("scratch").iterdir()) == []


@pytest.mark.anyio
async def test_restore_replaces_stale_workdir(harness) -> None:
    _seed_workdir(harness, "t1")
    assert await harness.backups.save("t1") is True
    (harness.backups.workdir("t1") / "leftover.tmp").write_text("partial")

    assert await harness.backups.restore("t1") is True

    workdir = harness.backups.workdir("t1")
    assert sorted(path.name for path in workdir.iterdir()) == ["cache", "channel.session"]
