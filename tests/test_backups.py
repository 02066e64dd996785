import asyncio
from datetime import datetime, timezone

from bedrock_manager.services import backups, server_layout
from bedrock_manager.services.backups import BackupManager, make_backup_name, parse_backup_instance
from bedrock_manager.services.bedrock_server import BedrockSupervisor


def _setup_backup_env(tmp_path, monkeypatch, instance_id: int = 1):
    monkeypatch.setattr(server_layout, "SERVERS_DIR", tmp_path / "servers")
    monkeypatch.setattr(backups, "BACKUPS_DIR", tmp_path / "backups")
    server_dir = server_layout.ensure_server_dir(instance_id)
    (server_dir / "server.properties").write_text("server-name=Original\n")
    (server_dir / "worlds").mkdir()
    (server_dir / "worlds" / "level.dat").write_bytes(b"\x00world")
    return server_dir


def test_backup_names_sort_chronologically():
    early = make_backup_name(3, datetime(2024, 1, 2, 3, 4, 5, 600000, tzinfo=timezone.utc))
    late = make_backup_name(3, datetime(2024, 11, 2, 3, 4, 5, 0, tzinfo=timezone.utc))

    assert early == "server-3-2024-01-02T03-04-05-600000Z.tar.gz"
    assert sorted([early, late], reverse=True) == [late, early]
    assert parse_backup_instance(early) == 3
    assert parse_backup_instance("../server-3-x.tar.gz") is None
    assert parse_backup_instance("server-3-2024.zip") is None


def test_list_backups_newest_first_and_per_instance(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)
    backups_dir = tmp_path / "backups"
    backups_dir.mkdir()
    for name in [
        "server-1-2024-01-01T00-00-00-000000Z.tar.gz",
        "server-1-2024-03-01T00-00-00-000000Z.tar.gz",
        "server-11-2024-02-01T00-00-00-000000Z.tar.gz",
        "server-1-notes.txt",
    ]:
        (backups_dir / name).write_bytes(b"")

    manager = BackupManager(BedrockSupervisor())

    assert manager.list_backups(1) == [
        "server-1-2024-03-01T00-00-00-000000Z.tar.gz",
        "server-1-2024-01-01T00-00-00-000000Z.tar.gz",
    ]
    assert manager.list_backups(11) == ["server-11-2024-02-01T00-00-00-000000Z.tar.gz"]
    assert manager.list_backups(2) == []


def test_list_backups_without_directory(tmp_path, monkeypatch):
    monkeypatch.setattr(backups, "BACKUPS_DIR", tmp_path / "nowhere")

    assert BackupManager(BedrockSupervisor()).list_backups(1) == []


def test_create_and_restore_round_trip(tmp_path, monkeypatch):
    server_dir = _setup_backup_env(tmp_path, monkeypatch)
    manager = BackupManager(BedrockSupervisor())

    async def scenario():
        created = await manager.create_backup(1)
        assert created["success"] is True
        assert manager.list_backups(1) == [created["backup_name"]]

        (server_dir / "server.properties").write_text("server-name=Changed\n")
        (server_dir / "worlds" / "level.dat").unlink()
        (server_dir / "junk.log").write_text("new")

        restored = await manager.restore_backup(1, created["backup_name"])
        assert restored["success"] is True

    asyncio.run(scenario())

    assert (server_dir / "server.properties").read_text() == "server-name=Original\n"
    assert (server_dir / "worlds" / "level.dat").read_bytes() == b"\x00world"
    assert not (server_dir / "junk.log").exists()
    assert [p.name for p in server_dir.parent.iterdir()] == ["server-1"]


def test_create_backup_of_missing_instance(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)

    result = asyncio.run(BackupManager(BedrockSupervisor()).create_backup(42))

    assert result["error_code"] == "instance_missing"


def test_restore_refused_while_running(tmp_path, monkeypatch):
    server_dir = _setup_backup_env(tmp_path, monkeypatch)
    supervisor = BedrockSupervisor()
    manager = BackupManager(supervisor)

    async def scenario():
        created = await manager.create_backup(1)
        (server_dir / "server.properties").write_text("server-name=Live\n")
        monkeypatch.setattr(supervisor, "is_running", lambda instance_id: True)
        return await manager.restore_backup(1, created["backup_name"])

    result = asyncio.run(scenario())

    assert result["success"] is False
    assert result["error_code"] == "instance_running"
    assert (server_dir / "server.properties").read_text() == "server-name=Live\n"


def test_restore_refused_while_restart_pending(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)
    supervisor = BedrockSupervisor()
    manager = BackupManager(supervisor)

    async def scenario():
        created = await manager.create_backup(1)
        monkeypatch.setattr(supervisor, "has_pending_restart", lambda instance_id: True)
        return await manager.restore_backup(1, created["backup_name"])

    assert asyncio.run(scenario())["error_code"] == "instance_running"


def test_corrupt_archive_leaves_live_directory_alone(tmp_path, monkeypatch):
    server_dir = _setup_backup_env(tmp_path, monkeypatch)
    backups_dir = tmp_path / "backups"
    backups_dir.mkdir()
    name = "server-1-2024-01-01T00-00-00-000000Z.tar.gz"
    (backups_dir / name).write_bytes(b"this is not gzip")

    result = asyncio.run(BackupManager(BedrockSupervisor()).restore_backup(1, name))

    assert result["success"] is False
    assert result["error_code"] == "restore_failed"
    assert (server_dir / "server.properties").read_text() == "server-name=Original\n"
    assert [p.name for p in server_dir.parent.iterdir()] == ["server-1"]


def test_restore_rejects_other_instances_backup(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)
    manager = BackupManager(BedrockSupervisor())

    async def scenario():
        created = await manager.create_backup(1)
        return await manager.restore_backup(2, created["backup_name"])

    assert asyncio.run(scenario())["error_code"] == "backup_not_found"


def test_restore_unknown_backup(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)

    result = asyncio.run(BackupManager(BedrockSupervisor()).restore_backup(
        1, "server-1-2020-01-01T00-00-00-000000Z.tar.gz",
    ))

    assert result["error_code"] == "backup_not_found"


def test_failed_tar_reports_exit_code(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)

    async def failing_tar(*args):
        return 2, "tar: something broke"

    monkeypatch.setattr(backups, "_run_tar", failing_tar)

    result = asyncio.run(BackupManager(BedrockSupervisor()).create_backup(1))

    assert result["error_code"] == "backup_failed"
    assert result["exit_code"] == 2
    assert list((tmp_path / "backups").iterdir()) == []


def test_timed_out_tar_reports_failure(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)

    async def hanging_tar(*args):
        raise asyncio.TimeoutError

    monkeypatch.setattr(backups, "_run_tar", hanging_tar)

    result = asyncio.run(BackupManager(BedrockSupervisor()).create_backup(1))

    assert result["error_code"] == "backup_failed"
    assert "timed out" in result["error"]


def test_delete_backup(tmp_path, monkeypatch):
    _setup_backup_env(tmp_path, monkeypatch)
    manager = BackupManager(BedrockSupervisor())

    created = asyncio.run(manager.create_backup(1))
    deleted = manager.delete_backup(created["backup_name"])
    missing = manager.delete_backup(created["backup_name"])

    assert deleted["success"] is True
    assert manager.list_backups(1) == []
    assert missing["error_code"] == "backup_not_found"
    assert manager.delete_backup("../../etc/passwd")["error_code"] == "backup_not_found"
