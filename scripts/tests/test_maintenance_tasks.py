import base64
import errno
import json
import os

import pytest

import maintenance_tasks
from conftest import FakeRunner, fail, ok
from maintenance_tasks import (TASK_CATALOG, ComponentStoreCheckFailed, IntegrityViolationsFound,
                               MaintenanceContext, PackageManagerNotInstalled, catalog_keys, check_chocolatey,
                               check_component_store, check_privileges, check_windows_update,
                               clean_temp_files, collect_inventory, encode_powershell,
                               optimize_system_volume, scan_system_files, update_winget)
from process_runner import CommandError
from system_inventory import InventoryParseError
from task_runner import TaskRunner


def missing(name):
    return FileNotFoundError(errno.ENOENT, f"Executable not found on PATH: {name}", name)


def make_context(log, responses=None, silent=False, config=None):
    return MaintenanceContext(runner=FakeRunner(responses), log=log, config=config or {}, silent=silent)


def decoded_script(invocation_args):
    encoded = invocation_args[invocation_args.index("-EncodedCommand") + 1]
    return base64.b64decode(encoded).decode("utf-16-le")


def test_catalog_order_and_defaults():
    assert catalog_keys() == [
        "windows_update", "winget", "chocolatey", "dism", "sfc",
        "temp_cleanup", "disk_optimization", "system_inventory",
    ]
    defaults = {entry.key for entry in TASK_CATALOG if entry.default_selected}
    assert "disk_optimization" not in defaults
    assert "sfc" in defaults


async def test_privilege_gate_passes_with_one_info_entry(log, capsys):
    context = make_context(log, {"net": ok("There are no entries in the list.")})

    assert await check_privileges(context) is True
    assert context.runner.commands() == [("net", "session")]
    assert "Running as Administrator: OK" in capsys.readouterr().out

    entries = await log.read_entries()
    assert [(e.level.value, e.message) for e in entries] == [("INFO", "Running as Administrator: OK")]


@pytest.mark.parametrize("response", [fail(2, "System error 5 has occurred.\nAccess is denied."), missing("net")])
async def test_privilege_gate_fails_without_elevation(log, capsys, response):
    context = make_context(log, {"net": response})

    assert await check_privileges(context) is False
    assert "requires Administrator privileges" in capsys.readouterr().out
    assert [e.level.value for e in await log.read_entries()] == ["ERROR"]


async def test_windows_update_reports_the_count(log):
    context = make_context(log, {"powershell.exe": ok("4 software update(s) available\r\n")})

    assert await check_windows_update(context) == "4 software update(s) available"

    invocation, _ = context.runner.calls[0]
    assert "-NoProfile" in invocation.args
    script = decoded_script(invocation.args)
    assert "Microsoft.Update.Session" in script
    assert "IsHidden=0" in script


async def test_windows_update_failure_surfaces_verbatim(log):
    context = make_context(log, {"powershell.exe": fail(1, "Exception from HRESULT: 0x8024402C")})

    with pytest.raises(CommandError, match="0x8024402C"):
        await check_windows_update(context)


def test_encode_powershell_round_trip():
    script = "Write-Output 'a \"quoted\" & piped | value'"
    assert base64.b64decode(encode_powershell(script)).decode("utf-16-le") == script


async def test_winget_missing_reports_not_installed(log):
    context = make_context(log, {"winget": missing("winget")})

    with pytest.raises(PackageManagerNotInstalled, match="winget is not installed"):
        await update_winget(context)


async def test_winget_interactive_mode_only_refreshes(log):
    context = make_context(log, silent=False)

    detail = await update_winget(context)

    assert context.runner.commands() == [("winget", "--version"), ("winget", "source", "update")]
    assert "winget upgrade --all" in detail


async def test_winget_silent_mode_upgrades_everything(log):
    context = make_context(log, silent=True)

    await update_winget(context)

    assert context.runner.commands()[-1] == (
        "winget", "upgrade", "--all",
        "--accept-package-agreements", "--accept-source-agreements", "--silent",
    )


async def test_winget_silent_mode_respects_config(log):
    config = {"package_managers": {"apply_upgrades_in_silent_mode": False}}
    context = make_context(log, silent=True, config=config)

    await update_winget(context)

    assert all("upgrade" not in command for command in context.runner.commands())


async def test_chocolatey_missing_reports_not_installed(log):
    context = make_context(log, {"choco": missing("choco")})

    with pytest.raises(PackageManagerNotInstalled, match="Chocolatey is not installed"):
        await check_chocolatey(context)


async def test_chocolatey_outdated_exit_code_lists_packages(log):
    outdated = "git|2.44.0|2.45.1|false\r\nnodejs|20.11.0|20.12.2|false\r\n"
    context = make_context(log, {"choco": [ok("2.2.2"), fail(2, stdout=outdated)]})

    detail = await check_chocolatey(context)

    assert detail.startswith("2 outdated package(s): git, nodejs")


async def test_chocolatey_up_to_date(log):
    context = make_context(log, {"choco": [ok("2.2.2"), ok("")]})
    assert await check_chocolatey(context) == "all Chocolatey packages are up to date"


async def test_chocolatey_silent_mode_upgrades(log):
    context = make_context(log, {"choco": [ok("2.2.2"), fail(2, stdout="git|2.44.0|2.45.1|false")]}, silent=True)

    assert await check_chocolatey(context) == "upgraded 1 package(s)"
    assert context.runner.commands()[-1] == ("choco", "upgrade", "all", "-y")


async def test_chocolatey_other_failures_surface(log):
    context = make_context(log, {"choco": [ok("2.2.2"), fail(1, "Unable to connect to source")]})

    with pytest.raises(CommandError, match="Unable to connect"):
        await check_chocolatey(context)


async def test_dism_invocation(log):
    context = make_context(log)

    await check_component_store(context)

    assert context.runner.commands() == [("Dism.exe", "/Online", "/Cleanup-Image", "/CheckHealth")]


async def test_dism_failure_suggests_repair_commands(log):
    context = make_context(log, {"Dism.exe": fail(87, "Error: 87\nThe parameter is incorrect.")})

    with pytest.raises(ComponentStoreCheckFailed) as excinfo:
        await check_component_store(context)

    message = str(excinfo.value)
    assert message.startswith("Dism.exe exited with code 87")
    assert "The parameter is incorrect." in message
    assert "/ScanHealth" in message
    assert "/RestoreHealth" in message
    assert excinfo.value.exit_code == 87


async def test_sfc_violation_exit_code_points_at_cbs_log(log):
    context = make_context(log, {"sfc": fail(1, stdout="Windows Resource Protection found corrupt files")})

    with pytest.raises(IntegrityViolationsFound) as excinfo:
        await scan_system_files(context)

    assert "CBS.log" in str(excinfo.value)
    assert excinfo.value.exit_code == 1


async def test_sfc_other_exit_codes_are_raw(log):
    context = make_context(log, {"sfc": fail(5, "You must be an administrator")})

    with pytest.raises(CommandError) as excinfo:
        await scan_system_files(context)

    assert not isinstance(excinfo.value, IntegrityViolationsFound)
    assert "You must be an administrator" in str(excinfo.value)


async def test_optimize_uses_configured_volume(log):
    context = make_context(log, config={"optimization": {"volume": "D:"}})

    assert await optimize_system_volume(context) == "D: optimized"
    assert context.runner.commands() == [("defrag", "D:", "/O")]


async def test_inventory_renders_parsed_output(log):
    blob = json.dumps({
        "os": {"caption": "Microsoft Windows 11 Pro", "version": "10.0.22631", "build": "22631"},
        "cpu": {"name": "Intel(R) Core(TM) i7-12700K", "cores": 12, "logical_processors": 20},
        "gpu": None,
        "memory": {"total_bytes": 17179869184},
        "motherboard": None,
    })
    context = make_context(log, {"powershell.exe": ok(blob)})

    summary = await collect_inventory(context)

    assert "Intel(R) Core(TM) i7-12700K" in summary
    assert "Graphics" not in summary
    assert "Win32_VideoController" in decoded_script(context.runner.calls[0][0].args)


async def test_inventory_garbage_output_raises_parse_error(log):
    context = make_context(log, {"powershell.exe": ok("Get-CimInstance : Access denied")})

    with pytest.raises(InventoryParseError):
        await collect_inventory(context)


def _populate(directory, names):
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        if name.endswith("_dir"):
            nested = directory / name
            nested.mkdir()
            (nested / "inner.tmp").write_text("x")
        else:
            (directory / name).write_text("x")


async def test_cleanup_warns_once_per_locked_entry(log, tmp_path, monkeypatch):
    temp_dir = tmp_path / "Temp"
    _populate(temp_dir, ["a.tmp", "b.tmp", "locked1.tmp", "c_dir", "locked2_dir"])

    real_remove = maintenance_tasks._remove_entry

    def remove_entry(path):
        if path.name.startswith("locked"):
            raise PermissionError(13, "The process cannot access the file because it is being used", str(path))
        real_remove(path)

    monkeypatch.setattr(maintenance_tasks, "_remove_entry", remove_entry)
    context = make_context(log, config={"cleanup": {"temp_dirs": [str(temp_dir)]}})

    runner = TaskRunner(log)
    assert await runner.run("Clean temporary files", lambda: clean_temp_files(context)) is True

    warnings = [e for e in await log.read_entries() if e.level.value == "WARN"]
    assert len(warnings) == 2
    assert all("locked" in w.message for w in warnings)
    assert sorted(p.name for p in temp_dir.iterdir()) == ["locked1.tmp", "locked2_dir"]
    assert runner.outcomes[0].detail.startswith("removed 3 of 5 entries")


async def test_cleanup_locked_entry_with_undecodable_name_only_warns(log, tmp_path, monkeypatch):
    temp_dir = tmp_path / "Temp"
    _populate(temp_dir, ["a.tmp"])
    try:
        with open(os.path.join(os.fsencode(temp_dir), b"locked\xff.tmp"), "wb") as f:
            f.write(b"x")
    except (OSError, UnicodeError):
        pytest.skip("filesystem rejects undecodable file names")

    real_remove = maintenance_tasks._remove_entry

    def remove_entry(path):
        if path.name.startswith("locked"):
            raise PermissionError(13, "The process cannot access the file because it is being used", str(path))
        real_remove(path)

    monkeypatch.setattr(maintenance_tasks, "_remove_entry", remove_entry)
    context = make_context(log, config={"cleanup": {"temp_dirs": [str(temp_dir)]}})

    runner = TaskRunner(log)
    assert await runner.run("Clean temporary files", lambda: clean_temp_files(context)) is True

    warnings = [e for e in await log.read_entries() if e.level.value == "WARN"]
    assert len(warnings) == 1
    assert "locked" in warnings[0].message
    assert runner.outcomes[0].detail.startswith("removed 1 of 2 entries")


async def test_cleanup_accepts_a_single_directory_string(log, tmp_path):
    temp_dir = tmp_path / "Temp"
    _populate(temp_dir, ["one.tmp", "two.tmp"])
    context = make_context(log, config={"cleanup": {"temp_dirs": str(temp_dir)}})

    detail = await clean_temp_files(context)

    assert detail.startswith("removed 2 of 2 entries")
    assert not [e for e in await log.read_entries() if e.level.value == "WARN"]


async def test_cleanup_skips_unreadable_directory(log, tmp_path):
    present = tmp_path / "present"
    _populate(present, ["one.tmp"])
    absent = tmp_path / "absent"
    context = make_context(log, config={"cleanup": {"temp_dirs": [str(absent), str(present)]}})

    detail = await clean_temp_files(context)

    assert detail.startswith("removed 1 of 1 entries")
    warnings = [e for e in await log.read_entries() if e.level.value == "WARN"]
    assert len(warnings) == 1
    assert "Skipping temp directory" in warnings[0].message


async def test_cleanup_removes_read_only_files(log, tmp_path):
    temp_dir = tmp_path / "Temp"
    _populate(temp_dir, ["readonly_dir"])
    target = temp_dir / "readonly_dir" / "inner.tmp"
    target.chmod(0o444)
    context = make_context(log, config={"cleanup": {"temp_dirs": [str(temp_dir)]}})

    await clean_temp_files(context)

    assert list(temp_dir.iterdir()) == []


async def test_cleanup_never_deletes_the_run_log(tmp_path):
    from maintenance_log import MaintenanceLog

    temp_dir = tmp_path / "Temp"
    _populate(temp_dir, ["stale.tmp"])
    log = MaintenanceLog(temp_dir / "SystemMaintenance-now.log")
    await log.info("Script started.")
    context = make_context(log, config={"cleanup": {"temp_dirs": [str(temp_dir)]}})

    await clean_temp_files(context)

    assert [p.name for p in temp_dir.iterdir()] == ["SystemMaintenance-now.log"]


@pytest.mark.parametrize("operation, responses, failing_exe", [
    (check_component_store, {"Dism.exe": fail(87, "Error: 87")}, "Dism.exe"),
    (scan_system_files, {"sfc": fail(2, "scan aborted")}, "sfc"),
    (optimize_system_volume, {"defrag": fail(1, "The volume is locked")}, "defrag"),
    (check_windows_update, {"powershell.exe": fail(1, "COM error")}, "powershell.exe"),
])
async def test_nonzero_exit_gives_false_outcome_and_one_error(log, operation, responses, failing_exe):
    context = make_context(log, responses)
    runner = TaskRunner(log)

    assert await runner.run("Task under test", lambda: operation(context)) is False

    errors = [e for e in await log.read_entries() if e.level.value == "ERROR"]
    assert len(errors) == 1
    assert errors[0].message.startswith("Task under test failed:")
    assert failing_exe in errors[0].message


@pytest.mark.parametrize("operation, responses", [
    (check_component_store, {}),
    (scan_system_files, {}),
    (optimize_system_volume, {}),
    (check_windows_update, {"powershell.exe": ok("0 software update(s) available")}),
])
async def test_zero_exit_gives_true_outcome(log, operation, responses):
    context = make_context(log, responses)
    runner = TaskRunner(log)

    assert await runner.run("Task under test", lambda: operation(context)) is True
    assert not [e for e in await log.read_entries() if e.level.value == "ERROR"]
