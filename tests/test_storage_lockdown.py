import sqlite3

import pytest

from radar_gateway.lockdown import StorageLockdownError
from radar_gateway.permissions import PermissionGate
from radar_gateway.store import GatewayStore


def _lockdown_env(monkeypatch):
    monkeypatch.setenv("RADAR_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("RADAR_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("RADAR_DB_LOCKDOWN_SECONDS", "60")


def _break_sqlite(monkeypatch):
    import radar_gateway.store as store_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    _lockdown_env(monkeypatch)
    store = GatewayStore(db_path=str(tmp_path / "gw.db"))

    # Simulate a storage-layer failure (e.g., DB locked/busy) without relying on
    # platform-specific WAL locking behavior.
    _break_sqlite(monkeypatch)

    with pytest.raises(sqlite3.OperationalError):
        store.get_permission(1, "weather")

    # Once tripped, all subsequent store ops fail-closed during the lockdown window.
    with pytest.raises(StorageLockdownError):
        store.get_permission(1, "weather")
    assert store.circuit.is_lockdown_active()


@pytest.mark.asyncio
async def test_permission_check_fails_closed_during_lockdown(tmp_path, monkeypatch):
    _lockdown_env(monkeypatch)
    store = GatewayStore(db_path=str(tmp_path / "gw.db"))
    gate = PermissionGate(store)
    assert await gate.grant(1, "weather")

    _break_sqlite(monkeypatch)
    assert await gate.check(1, "weather") is False
    assert await gate.check(1, "weather") is False
    assert gate.cache_stats()["size"] == 0

    # Denials caused by storage errors are never cached.
    monkeypatch.undo()
    store.circuit.reset()
    assert await gate.check(1, "weather") is True
