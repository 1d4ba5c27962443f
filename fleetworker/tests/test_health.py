from __future__ import annotations

import pytest

from fleetworker.health import HealthMonitor, HealthSettings
from fleetworker.registry import Guard, LifecycleState


def _monitor(harness) -> HealthMonitor:
    return HealthMonitor(harness.supervisor, harness.backups, settings=HealthSettings(concurrency=2))


@pytest.mark.anyio
async def test_connectivity_sweep_revives_disconnected_only(harness) -> None:
    await harness.supervisor.initialize("live")
    await harness.supervisor.initialize("dropped")
    harness.factory.channels[1].connected = False
    harness.factory.auto_ready = False
    await harness.supervisor.initialize("pending")
    harness.registry.set_state(harness.registry.ensure("failed"), LifecycleState.FAILED, reason="test")

    revived = await _monitor(harness).connectivity_sweep()

    assert revived == ["dropped"]
    assert harness.factory.channels[1].destroyed
    assert harness.registry.get("dropped").state is LifecycleState.READY
    assert harness.registry.get("dropped").channel is harness.factory.channels[-1]
    assert harness.registry.get("failed").state is LifecycleState.FAILED
    assert len([c for c in harness.factory.channels if c.tenant == "pending"]) == 1


@pytest.mark.anyio
async def test_backup_sweep_saves_ready_tenants_and_skips_saving(harness, settle) -> None:
    await harness.supervisor.initialize("t1")
    await harness.supervisor.initialize("t2")
    await settle(
        lambda: len(harness.store.rows) == 2 and not harness.registry.holders(Guard.SAVING)
    )
    harness.factory.auto_ready = False
    await harness.supervisor.initialize("t3")
    upserts = harness.store.upserts
    assert harness.registry.try_acquire("t2", Guard.SAVING)

    saved = await _monitor(harness).backup_sweep()

    assert saved == ["t1"]
    assert harness.store.upserts == upserts + 1
    harness.registry.release("t2", Guard.SAVING)


@pytest.mark.anyio
async def test_stuck_sweep_resets_expired_initializations(harness) -> None:
    harness.factory.init_silent = True
    await harness.supervisor.initialize("t1")
    harness.clock.advance(10_000)

    assert await _monitor(harness).stuck_sweep() == ["t1"]
    assert harness.factory.channels[0].destroyed


@pytest.mark.anyio
async def test_monitor_start_and_stop(harness) -> None:
    monitor = HealthMonitor(
        harness.supervisor,
        harness.backups,
        settings=HealthSettings(connectivity_interval=60, backup_interval=0, stuck_check_interval=60),
    )
    monitor.start()
    assert monitor.running
    await monitor.stop()
    assert not monitor.running
