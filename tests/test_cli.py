import json

import radar_cli


def _run(db, *argv):
    return radar_cli.main(["--db", db, *argv])


def test_grant_list_revoke(tmp_path, capsys):
    db = str(tmp_path / "cli.db")

    assert _run(db, "grant", "5", "weather", "--granted-by", "1") == 0
    assert _run(db, "bulk-grant", "5", "github", "search") == 0
    capsys.readouterr()

    assert _run(db, "list", "5", "--json") == 0
    assert json.loads(capsys.readouterr().out) == {"caller_id": 5, "tools": ["github", "search", "weather"]}

    assert _run(db, "revoke", "5", "github") == 0
    capsys.readouterr()
    assert _run(db, "list", "5") == 0
    out = capsys.readouterr().out
    assert "  - weather" in out
    assert "github" not in out


def test_list_empty(tmp_path, capsys):
    assert _run(str(tmp_path / "cli.db"), "list", "9") == 0
    assert "has no tool permissions" in capsys.readouterr().out


def test_audit_views_and_purge(tmp_path, capsys):
    import asyncio

    from radar_gateway.audit_log import AuditWriter
    from radar_gateway.store import GatewayStore

    db = str(tmp_path / "cli.db")
    writer = AuditWriter(GatewayStore(db))

    async def _seed():
        await writer.permission_denied(7, "shell")
        await writer.message_received(7, 12)
        await writer.drain()

    asyncio.run(_seed())

    assert _run(db, "audit-trail", "7") == 0
    out = capsys.readouterr().out
    assert "AUDIT TRAIL for caller 7" in out
    assert "(2 events)" in out

    assert _run(db, "incidents", "--min-severity", "warning") == 0
    out = capsys.readouterr().out
    assert "permission_denied [warning]" in out
    assert "message_received" not in out

    assert _run(db, "purge", "--days", "0") == 0
    assert "Deleted 2 audit events" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert radar_cli.main([]) == 1
