#!/usr/bin/env python3
"""
Windows Maintenance Run Log

Append-only, one file per run. Each entry is a single line:

    2026-10-17T08:15:02.113Z [INFO] Starting Scan system files (SFC)

Writes are best-effort: a failed append prints a warning and the run carries on.
"""

import logging
import os
import re
import sys
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles
from colorama import Fore

logger = logging.getLogger('winmaint.maintenance_log')


class LogLevel(Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def coerce(cls, level) -> 'LogLevel':
        if isinstance(level, cls):
            return level
        name = str(level).upper()
        if name == 'WARNING':
            name = 'WARN'
        return cls(name)


@dataclass
class LogEntry:
    timestamp: datetime
    level: LogLevel
    message: str


LOG_LINE_PATTERN = re.compile(
    r'^(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z) '
    r'\[(?P<level>INFO|WARN|ERROR)\] (?P<message>.*)$'
)


def iso_timestamp(moment: Optional[datetime] = None) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def format_log_line(message: str, level='INFO', moment: Optional[datetime] = None) -> str:
    """Render one entry, collapsing embedded newlines so it stays on one line."""
    flat = ' | '.join(part.strip() for part in str(message).splitlines() if part.strip())
    return f"{iso_timestamp(moment)} [{LogLevel.coerce(level).value}] {flat}"


def parse_log_line(line: str) -> Optional[LogEntry]:
    """Parse a line written by ``format_log_line``; returns None for anything else."""
    match = LOG_LINE_PATTERN.match(line.rstrip('\r\n'))
    if not match:
        return None
    return LogEntry(
        timestamp=parse_timestamp(match.group('timestamp')),
        level=LogLevel(match.group('level')),
        message=match.group('message')
    )


class MaintenanceLog:
    """The persisted record of one maintenance run."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @staticmethod
    def build_path(directory, prefix: str = 'SystemMaintenance',
                   started_at: Optional[datetime] = None) -> Path:
        """Log file path for a run; colons in the start timestamp are made filesystem-safe."""
        stamp = iso_timestamp(started_at).replace(':', '-')
        return Path(directory) / f"{prefix}-{stamp}.log"

    async def write(self, message: str, level='INFO'):
        """Append one entry. Never raises on I/O or encoding failure."""
        try:
            line = format_log_line(message, level) + os.linesep
            # newline='' keeps os.linesep as written instead of translating it again;
            # lone surrogates from undecodable file names are escaped, not fatal
            async with aiofiles.open(self.path, 'a', encoding='utf-8', errors='backslashreplace',
                                     newline='') as f:
                await f.write(line)
        except (OSError, ValueError) as e:
            logger.debug(f"Log append to {self.path} failed: {e}")
            print(f"{Fore.YELLOW}Warning: could not write to log file {self.path}: {e}", file=sys.stderr)

    async def info(self, message: str):
        await self.write(message, LogLevel.INFO)

    async def warn(self, message: str):
        await self.write(message, LogLevel.WARN)

    async def error(self, message: str):
        await self.write(message, LogLevel.ERROR)

    async def read_entries(self) -> List[LogEntry]:
        """Parse every entry written so far. A log that was never created reads as empty."""
        if not self.path.exists():
            return []

        entries = []
        async with aiofiles.open(self.path, 'r', encoding='utf-8', errors='replace') as f:
            async for line in f:
                entry = parse_log_line(line)
                if entry:
                    entries.append(entry)
                elif line.strip():
                    logger.debug(f"Skipping unparseable log line: {line.rstrip()}")
        return entries

    async def level_counts(self) -> Dict[str, int]:
        counts = Counter(entry.level.value for entry in await self.read_entries())
        return {level.value: counts.get(level.value, 0) for level in LogLevel}
