#!/usr/bin/env python3
"""
Windows Maintenance Tasks

The privilege gate plus the ordered catalog of maintenance operations. Every
operation takes a MaintenanceContext, returns an optional detail message and raises
on failure; TaskRunner turns that into the per-task outcome.
"""

import asyncio
import base64
import logging
import os
import shutil
import stat
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import psutil
from colorama import Fore

from maintenance_log import MaintenanceLog
from process_runner import CommandError, ProcessRunner
from system_inventory import INVENTORY_SCRIPT, format_bytes, parse_inventory, render_inventory

logger = logging.getLogger('winmaint.maintenance_tasks')

POWERSHELL = 'powershell.exe'

WINDOWS_UPDATE_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$session = New-Object -ComObject Microsoft.Update.Session
$searcher = $session.CreateUpdateSearcher()
$result = $searcher.Search("IsInstalled=0 and IsHidden=0 and Type='Software'")
Write-Output "$($result.Updates.Count) software update(s) available"
"""

# sfc /scannow exits with 1 when it found integrity violations
SFC_VIOLATIONS_EXIT_CODE = 1
CBS_LOG_PATH = r"%WINDIR%\Logs\CBS\CBS.log"

# choco outdated exits with 2 when at least one package is outdated
CHOCO_OUTDATED_EXIT_CODE = 2


class PackageManagerNotInstalled(Exception):
    """The package manager binary could not be found on PATH."""


class IntegrityViolationsFound(CommandError):
    """SFC reported corrupt system files."""

    def _build_message(self) -> str:
        return (
            f"System File Checker found integrity violations (exit code {self.exit_code}).\n"
            f"Review {CBS_LOG_PATH} for details, then consider running "
            f"'DISM /Online /Cleanup-Image /RestoreHealth' followed by 'sfc /scannow'."
        )


class ComponentStoreCheckFailed(CommandError):
    """DISM could not verify the component store."""

    def _build_message(self) -> str:
        return (
            f"{super()._build_message()}\n"
            f"Consider running 'DISM /Online /Cleanup-Image /ScanHealth' and "
            f"'DISM /Online /Cleanup-Image /RestoreHealth'."
        )


@dataclass
class MaintenanceContext:
    """Everything an operation needs, passed explicitly instead of module globals."""
    runner: ProcessRunner
    log: MaintenanceLog
    config: Dict[str, Any] = field(default_factory=dict)
    silent: bool = False

    def setting(self, section: str, key: str, default=None):
        return (self.config.get(section) or {}).get(key, default)


def encode_powershell(script: str) -> str:
    """Base64 UTF-16LE form accepted by -EncodedCommand; no quoting of the script needed."""
    return base64.b64encode(script.encode('utf-16-le')).decode('ascii')


async def run_powershell(context: MaintenanceContext, script: str):
    return await context.runner.invoke(POWERSHELL, [
        '-NoProfile', '-NonInteractive', '-ExecutionPolicy', 'Bypass',
        '-EncodedCommand', encode_powershell(script)
    ])


async def check_privileges(context: MaintenanceContext) -> bool:
    """Gate: only an elevated session may run maintenance."""
    try:
        await context.runner.invoke('net', ['session'])
    except (CommandError, OSError) as e:
        logger.debug(f"Privilege check failed: {e}")
        print(f"{Fore.RED}ERROR: This script requires Administrator privileges!")
        print(f"{Fore.YELLOW}Please re-run your terminal (PowerShell, Command Prompt, etc.) as an Administrator.")
        await context.log.error("Script not running as Administrator.")
        return False

    print(f"{Fore.GREEN}Running as Administrator: OK")
    await context.log.info("Running as Administrator: OK")
    return True


async def check_windows_update(context: MaintenanceContext) -> Optional[str]:
    result = await run_powershell(context, WINDOWS_UPDATE_SCRIPT)
    return result.stdout.strip() or None


async def _require_package_manager(context: MaintenanceContext, executable: str, display_name: str,
                                   version_args: List[str]):
    try:
        await context.runner.invoke(executable, version_args)
    except FileNotFoundError:
        raise PackageManagerNotInstalled(f"{display_name} is not installed or not on PATH")


def _apply_upgrades(context: MaintenanceContext) -> bool:
    return context.silent and bool(context.setting('package_managers', 'apply_upgrades_in_silent_mode', True))


async def update_winget(context: MaintenanceContext) -> Optional[str]:
    await _require_package_manager(context, 'winget', 'winget', ['--version'])
    await context.runner.invoke('winget', ['source', 'update'])

    if not _apply_upgrades(context):
        return "sources refreshed. Use `winget upgrade` to view packages and `winget upgrade --all` to install them"

    await context.runner.invoke('winget', [
        'upgrade', '--all',
        '--accept-package-agreements', '--accept-source-agreements', '--silent'
    ])
    return "sources refreshed, all available packages upgraded"


def _parse_choco_outdated(output: str) -> List[str]:
    """``choco outdated --limit-output`` prints name|current|available|pinned per package."""
    packages = []
    for line in output.splitlines():
        parts = line.strip().split('|')
        if len(parts) >= 3 and parts[0]:
            packages.append(parts[0])
    return packages


async def check_chocolatey(context: MaintenanceContext) -> Optional[str]:
    await _require_package_manager(context, 'choco', 'Chocolatey', ['--version'])

    try:
        result = await context.runner.invoke('choco', ['outdated', '--limit-output'])
        output = result.stdout
    except CommandError as e:
        if e.exit_code != CHOCO_OUTDATED_EXIT_CODE:
            raise
        output = e.stdout

    outdated = _parse_choco_outdated(output)
    if not outdated:
        return "all Chocolatey packages are up to date"

    if not _apply_upgrades(context):
        return f"{len(outdated)} outdated package(s): {', '.join(outdated)}. Use `choco upgrade all -y` to install updates"

    await context.runner.invoke('choco', ['upgrade', 'all', '-y'])
    return f"upgraded {len(outdated)} package(s)"


async def check_component_store(context: MaintenanceContext) -> Optional[str]:
    try:
        await context.runner.invoke('Dism.exe', ['/Online', '/Cleanup-Image', '/CheckHealth'])
    except CommandError as e:
        raise ComponentStoreCheckFailed(e.invocation, e.exit_code, e.stdout, e.stderr) from e
    return None


async def scan_system_files(context: MaintenanceContext) -> Optional[str]:
    try:
        await context.runner.invoke('sfc', ['/scannow'])
    except CommandError as e:
        if e.exit_code == SFC_VIOLATIONS_EXIT_CODE:
            raise IntegrityViolationsFound(e.invocation, e.exit_code, e.stdout, e.stderr) from e
        raise
    return None


def _force_writable(func, path, exc):
    """rmtree error hook: clear the read-only bit and retry once."""
    os.chmod(path, stat.S_IWRITE)
    func(path)


def _remove_entry(path: Path):
    """Recursively and forcibly remove one temp entry."""
    if path.is_dir() and not path.is_symlink():
        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_force_writable)
        else:
            shutil.rmtree(path, onerror=lambda func, p, info: _force_writable(func, p, info[1]))
    else:
        try:
            path.unlink()
        except PermissionError:
            os.chmod(path, stat.S_IWRITE)
            path.unlink()


def _free_bytes(path: Path) -> Optional[int]:
    try:
        return psutil.disk_usage(str(path)).free
    except OSError:
        return None


def _same_path(a: Path, b: Path) -> bool:
    return os.path.normcase(os.path.abspath(a)) == os.path.normcase(os.path.abspath(b))


def _temp_directories(context: MaintenanceContext) -> List[Path]:
    configured = context.setting('cleanup', 'temp_dirs') or ['%TEMP%', '%SystemRoot%\\Temp']
    if isinstance(configured, str):
        configured = [configured]
    directories = []
    for raw in configured:
        expanded = os.path.expandvars(str(raw))
        if '%' in expanded or '$' in expanded:
            logger.debug(f"Skipping temp dir with unresolved variables: {raw}")
            continue
        path = Path(expanded)
        if path not in directories:
            directories.append(path)
    return directories


async def clean_temp_files(context: MaintenanceContext) -> Optional[str]:
    """Sweep every configured temp directory; items that can't be removed only warn."""
    total = 0
    removed = 0
    freed = 0

    for directory in _temp_directories(context):
        try:
            entries = await asyncio.to_thread(lambda: sorted(directory.iterdir()))
        except OSError as e:
            await context.log.warn(f"Skipping temp directory {directory}: {e}")
            continue

        free_before = _free_bytes(directory)
        for entry in entries:
            if _same_path(entry, context.log.path):
                continue
            total += 1
            try:
                await asyncio.to_thread(_remove_entry, entry)
                removed += 1
            except OSError as e:
                await context.log.warn(f"Could not remove {entry}: {e}")

        free_after = _free_bytes(directory)
        if free_before is not None and free_after is not None and free_after > free_before:
            freed += free_after - free_before

    return f"removed {removed} of {total} entries, freed {format_bytes(freed)}"


async def optimize_system_volume(context: MaintenanceContext) -> Optional[str]:
    volume = context.setting('optimization', 'volume') or os.environ.get('SystemDrive', 'C:')
    volume = os.path.expandvars(str(volume))
    await context.runner.invoke('defrag', [volume, '/O'])
    return f"{volume} optimized"


async def collect_inventory(context: MaintenanceContext) -> Optional[str]:
    result = await run_powershell(context, INVENTORY_SCRIPT)
    return render_inventory(parse_inventory(result.stdout))


@dataclass(frozen=True)
class CatalogEntry:
    key: str
    title: str
    operation: Callable[[MaintenanceContext], Awaitable[Optional[str]]]
    default_selected: bool = True
    description: str = ''


TASK_CATALOG: Tuple[CatalogEntry, ...] = (
    CatalogEntry('windows_update', 'Check Windows Update', check_windows_update, True,
                 'Count pending, non-hidden software updates'),
    CatalogEntry('winget', 'Update winget sources', update_winget, True,
                 'Refresh winget sources (upgrades all packages in silent mode)'),
    CatalogEntry('chocolatey', 'Check Chocolatey packages', check_chocolatey, False,
                 'List outdated Chocolatey packages (upgrades them in silent mode)'),
    CatalogEntry('dism', 'Check component store health (DISM)', check_component_store, True,
                 'DISM /Online /Cleanup-Image /CheckHealth'),
    CatalogEntry('sfc', 'Scan system files (SFC)', scan_system_files, True,
                 'sfc /scannow; this may take some time'),
    CatalogEntry('temp_cleanup', 'Clean temporary files', clean_temp_files, True,
                 'Delete the contents of the temp directories'),
    CatalogEntry('disk_optimization', 'Optimize system volume', optimize_system_volume, False,
                 'defrag /O on the system drive'),
    CatalogEntry('system_inventory', 'Collect hardware inventory', collect_inventory, True,
                 'OS, CPU, GPU, RAM and motherboard summary'),
)


def catalog_keys() -> List[str]:
    return [entry.key for entry in TASK_CATALOG]
