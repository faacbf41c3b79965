#!/usr/bin/env python3
"""
Windows System Maintenance Orchestrator

Checks for administrator rights, lets the operator pick maintenance tasks (or runs the
default set in silent mode), runs them one after another and prints a summary with the
location of the run log.

Usage:
    python maintenance_orchestrator.py
    python maintenance_orchestrator.py --silent
    python maintenance_orchestrator.py --tasks dism,sfc --config config/maintenance.yaml
"""

import argparse
import asyncio
import copy
import functools
import logging
import sys
import tempfile
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

import yaml
from colorama import Fore, Style

from maintenance_log import MaintenanceLog
from maintenance_tasks import (TASK_CATALOG, CatalogEntry, MaintenanceContext,
                               catalog_keys, check_privileges)
from process_runner import ProcessRunner
from task_runner import TaskRunner
from task_selection import default_selection, prompt_selection, select_by_keys

logger = logging.getLogger('winmaint.orchestrator')

DEFAULT_CONFIG_PATH = './config/maintenance.yaml'


def get_default_config() -> Dict:
    """Get default configuration"""
    return {
        'logging': {
            'log_dir': None,
            'file_prefix': 'SystemMaintenance'
        },
        'process': {
            'timeout_seconds': None
        },
        'package_managers': {
            'apply_upgrades_in_silent_mode': True
        },
        'cleanup': {
            'temp_dirs': ['%TEMP%', '%SystemRoot%\\Temp']
        },
        'optimization': {
            'volume': None
        },
        'tasks': {
            'defaults': {}
        }
    }


def _merge(base: Dict, override: Dict) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str]) -> Dict:
    """Load configuration from YAML file, layered over the defaults"""
    defaults = get_default_config()
    if not config_path:
        return defaults
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            logger.error(f"Config file {config_path} does not contain a mapping, using defaults")
            return defaults
        logger.info(f"Configuration loaded from {config_path}")
        return _merge(defaults, loaded)
    except FileNotFoundError:
        logger.warning(f"Config file {config_path} not found, using defaults")
        return defaults
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config: {e}")
        return defaults


def task_defaults(config: Dict) -> Dict[str, bool]:
    """The tasks.defaults overrides, or an empty mapping when the config holds something else"""
    tasks = config.get('tasks')
    defaults = tasks.get('defaults') if isinstance(tasks, dict) else None
    if defaults is not None and not isinstance(defaults, dict):
        logger.warning(f"Ignoring tasks.defaults: expected a mapping, got {type(defaults).__name__}")
    return defaults if isinstance(defaults, dict) else {}


class MaintenanceOrchestrator:
    """Gate, selection, sequential execution and summary for one maintenance run."""

    def __init__(self, config: Dict, silent: bool = False, task_keys: Optional[List[str]] = None,
                 log: Optional[MaintenanceLog] = None, runner: Optional[ProcessRunner] = None,
                 verbose: bool = False, catalog: Sequence[CatalogEntry] = TASK_CATALOG,
                 input_fn: Callable[[str], str] = input):
        self.config = config
        self.silent = silent
        self.task_keys = task_keys
        self.catalog = catalog
        self.input_fn = input_fn

        if log is None:
            log_dir = (config.get('logging') or {}).get('log_dir') or tempfile.gettempdir()
            log = MaintenanceLog(MaintenanceLog.build_path(
                log_dir,
                (config.get('logging') or {}).get('file_prefix') or 'SystemMaintenance',
                datetime.now(timezone.utc)
            ))
        self.log = log

        if runner is None:
            runner = ProcessRunner(echo=verbose, timeout=(config.get('process') or {}).get('timeout_seconds'))
        self.context = MaintenanceContext(runner=runner, log=self.log, config=config, silent=silent)
        self.task_runner = TaskRunner(self.log, animate=False if verbose else None)

    def select_tasks(self) -> List[CatalogEntry]:
        overrides = task_defaults(self.config)
        if self.task_keys is not None:
            return select_by_keys(self.catalog, self.task_keys)
        if self.silent:
            return default_selection(self.catalog, overrides)
        return prompt_selection(self.catalog, overrides, input_fn=self.input_fn)

    async def run(self) -> int:
        """Execute one maintenance run and return the process exit status"""
        print(f"{Fore.CYAN}{Style.BRIGHT}=== Windows System Maintenance Tool ===")
        await self.log.info("Script started.")

        try:
            if not await check_privileges(self.context):
                return 1

            selected = self.select_tasks()
            if not selected:
                print(f"{Fore.YELLOW}No tasks selected. Nothing to do.")
                await self.log.info("No tasks selected.")
                return 0

            mode = 'explicit' if self.task_keys is not None else ('silent' if self.silent else 'interactive')
            await self.log.info(f"Running {len(selected)} task(s) in {mode} mode: "
                                f"{', '.join(entry.key for entry in selected)}")

            for step, entry in enumerate(selected, start=1):
                print(f"\n{Fore.CYAN}=== STEP {step}/{len(selected)}: {entry.title} ===")
                await self.task_runner.run(entry.title, functools.partial(entry.operation, self.context))

            await self.print_summary()
            return 0

        except Exception as e:
            logger.debug("Unhandled error in maintenance run", exc_info=True)
            print(f"{Fore.RED}\nCRITICAL ERROR: {e}", file=sys.stderr)
            await self.log.error(f"Critical script error: {e}")
            return 1

    async def print_summary(self):
        outcomes = self.task_runner.outcomes
        succeeded = len(self.task_runner.succeeded)

        await self.log.info(f"Maintenance finished: {succeeded}/{len(outcomes)} tasks succeeded")
        counts = await self.log.level_counts()

        print(f"{Fore.GREEN}{Style.BRIGHT}\n=== MAINTENANCE COMPLETE ===")
        print(f"Tasks succeeded: {succeeded}/{len(outcomes)}")
        if self.task_runner.failed:
            print(f"{Fore.RED}Failed tasks:")
            for outcome in self.task_runner.failed:
                print(f"{Fore.RED}  - {outcome.title}")
        print(f"Log warnings: {counts['WARN']}, errors: {counts['ERROR']}")
        print(f"{Style.DIM}Log file created at: {self.log.path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Windows System Maintenance Tool')
    parser.add_argument('-s', '--silent', action='store_true', help='Run in non-interactive mode')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Configuration file path')
    parser.add_argument('--tasks', help=f"Comma-separated task keys to run ({', '.join(catalog_keys())})")
    parser.add_argument('--list-tasks', action='store_true', help='List available tasks and exit')
    parser.add_argument('--log-dir', help='Directory for the run log (default: system temp directory)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Echo commands and their output')
    return parser


def list_tasks(config: Dict):
    overrides = task_defaults(config)
    defaults = {entry.key for entry in default_selection(TASK_CATALOG, overrides)}
    for entry in TASK_CATALOG:
        mark = 'x' if entry.key in defaults else ' '
        print(f"[{mark}] {entry.key:<18} {entry.title}")


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

    config = load_config(args.config)
    if args.log_dir:
        config['logging'] = dict(config.get('logging') or {}, log_dir=args.log_dir)

    if args.list_tasks:
        list_tasks(config)
        return 0

    task_keys = None
    if args.tasks is not None:
        task_keys = [key for key in args.tasks.split(',') if key.strip()]
        if not task_keys:
            parser.error("--tasks needs at least one task key (see --list-tasks)")
        try:
            select_by_keys(TASK_CATALOG, task_keys)
        except ValueError as e:
            parser.error(str(e))

    orchestrator = MaintenanceOrchestrator(
        config,
        silent=args.silent,
        task_keys=task_keys,
        verbose=args.verbose
    )
    return await orchestrator.run()


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print(f"{Fore.YELLOW}\nInterrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    run()
