#!/usr/bin/env python3
"""
Windows Maintenance Process Runner

Spawns external maintenance tools (net, winget, choco, Dism.exe, sfc, defrag,
powershell.exe) with an argument vector, drains stdout and stderr concurrently and
turns the exit status into either a CommandResult or a CommandError.
"""

import asyncio
import codecs
import errno
import logging
import shutil
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from colorama import Fore, Style

logger = logging.getLogger('winmaint.process_runner')

READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class CommandInvocation:
    """A single external command: executable name plus ordered arguments."""
    executable: str
    args: Tuple[str, ...] = ()

    def display(self) -> str:
        return ' '.join((self.executable,) + self.args)


@dataclass
class CommandResult:
    """Captured output of a process that exited with status 0."""
    invocation: CommandInvocation
    stdout: str
    stderr: str
    exit_code: int = 0


class CommandError(Exception):
    """Raised when an external command exits with a nonzero status."""

    def __init__(self, invocation: CommandInvocation, exit_code: int, stdout: str = '', stderr: str = ''):
        self.invocation = invocation
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        message = f"{self.invocation.executable} exited with code {self.exit_code}"
        details = self.stderr.strip() or self.stdout.strip()
        if details:
            message = f"{message}\n{details}"
        return message


def decode_output(data: bytes) -> str:
    """Decode tool output; falls back to the ANSI codepage and drops NULs from UTF-16 writers."""
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError:
        text = data.decode('cp1252', errors='replace')
    return text.replace('\x00', '')


class StreamDecoder:
    """Incremental counterpart of decode_output for text echoed while a process runs.

    Keeps a multi-byte UTF-8 sequence split across two reads intact, and switches to
    the ANSI codepage for the rest of the stream once the bytes turn out not to be UTF-8.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder('utf-8')()

    def decode(self, chunk: bytes, final: bool = False) -> str:
        pending = self._decoder.getstate()[0]
        try:
            text = self._decoder.decode(chunk, final)
        except UnicodeDecodeError:
            self._decoder = codecs.getincrementaldecoder('cp1252')(errors='replace')
            text = self._decoder.decode(pending + chunk, final)
        return text.replace('\x00', '')


class ProcessRunner:
    """Runs one external process at a time and captures its output."""

    def __init__(self, echo: bool = False, timeout: Optional[float] = None):
        self.echo = echo
        self.timeout = timeout

    def resolve(self, executable: str) -> str:
        """Resolve an executable through PATH (and PATHEXT on Windows)."""
        resolved = shutil.which(executable)
        if resolved is None:
            raise FileNotFoundError(errno.ENOENT, f"Executable not found on PATH: {executable}", executable)
        return resolved

    async def invoke(self, executable: str, args: Optional[List[str]] = None) -> CommandResult:
        """Run ``executable`` with ``args`` and wait for it to exit."""
        invocation = CommandInvocation(executable, tuple(str(arg) for arg in (args or [])))
        program = self.resolve(executable)

        if self.echo:
            print(f"{Style.DIM}> {invocation.display()}")
        logger.debug(f"Spawning {program} {list(invocation.args)}")

        process = await asyncio.create_subprocess_exec(
            program,
            *invocation.args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )

        try:
            stdout, stderr, exit_code = await asyncio.wait_for(
                self._collect(process),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"{invocation.display()} timed out after {self.timeout}s, killing it")
            process.kill()
            await process.wait()
            raise

        logger.debug(f"{executable} exited with code {exit_code}")

        if exit_code != 0:
            raise CommandError(invocation, exit_code, stdout, stderr)

        return CommandResult(invocation=invocation, stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def _collect(self, process) -> Tuple[str, str, int]:
        """Drain both pipes at the same time, then reap the process."""
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []

        await asyncio.gather(
            self._drain(process.stdout, stdout_chunks, self._echo_stdout),
            self._drain(process.stderr, stderr_chunks, self._echo_stderr)
        )
        exit_code = await process.wait()

        return decode_output(b''.join(stdout_chunks)), decode_output(b''.join(stderr_chunks)), exit_code

    async def _drain(self, stream: asyncio.StreamReader, buffer: List[bytes],
                     echo: Callable[[str], None]):
        decoder = StreamDecoder()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer.append(chunk)
            if self.echo:
                echo(decoder.decode(chunk))
        if self.echo:
            echo(decoder.decode(b'', final=True))

    def _echo_stdout(self, text: str):
        if not text:
            return
        sys.stdout.write(f"{Style.DIM}{text}{Style.RESET_ALL}")
        sys.stdout.flush()

    def _echo_stderr(self, text: str):
        if not text:
            return
        sys.stderr.write(f"{Fore.RED}{text}{Style.RESET_ALL}")
        sys.stderr.flush()
