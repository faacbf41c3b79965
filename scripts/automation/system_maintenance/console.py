#!/usr/bin/env python3
"""
Terminal output helpers: consistent indentation for multi-line messages and a
threaded progress spinner.
"""

import itertools
import sys
import textwrap
import threading
import time
from typing import Optional

from colorama import Fore, Style, init

init(autoreset=True)

SUCCESS_MARK = '✔'
FAILURE_MARK = '✖'
INDENT = '    '


def indent_block(text: str, prefix: str = INDENT) -> str:
    """Indent every line of a (possibly multi-line) message the same way."""
    return textwrap.indent(str(text).strip('\r\n'), prefix, lambda line: True)


class Spinner:
    """Progress indicator for a single long-running task.

    Animates on its own thread while the event loop waits on a child process. When
    ``animate`` is off (no TTY, or verbose output is interleaved) it prints one static
    start line instead.
    """

    FRAMES = ['|', '/', '-', '\\']

    def __init__(self, message: str, animate: Optional[bool] = None, interval: float = 0.1):
        self.message = message
        self.interval = interval
        self.animate = sys.stdout.isatty() if animate is None else animate
        self._frames = itertools.cycle(self.FRAMES)
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> 'Spinner':
        if not self.animate:
            print(f"{Fore.YELLOW}… {self.message}")
            return self
        self._running = True
        self._thread = threading.Thread(target=self._spin, name=f"spinner-{self.message}", daemon=True)
        self._thread.start()
        return self

    def succeed(self, text: Optional[str] = None):
        self.stop()
        print(f"{Fore.GREEN}{SUCCESS_MARK} {text or self.message}")

    def fail(self, text: Optional[str] = None):
        self.stop()
        print(f"{Fore.RED}{FAILURE_MARK} {text or self.message}")

    def stop(self):
        """Halt the animation and clear its line. Safe to call more than once."""
        if self._running:
            self._running = False
            if self._thread:
                self._thread.join()
            sys.stdout.write('\r' + ' ' * (len(self.message) + 4) + '\r')
            sys.stdout.flush()

    def _spin(self):
        while self._running:
            sys.stdout.write(f"\r{Fore.YELLOW}{next(self._frames)} {self.message}{Style.RESET_ALL}")
            sys.stdout.flush()
            time.sleep(self.interval)
