#!/usr/bin/env python3
"""
Choosing which catalog entries to run: the silent default set, an explicit key
list, or an interactive toggle menu with the defaults pre-checked.
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence

from colorama import Fore, Style

from maintenance_tasks import CatalogEntry


def default_selection(catalog: Sequence[CatalogEntry],
                      overrides: Optional[Dict[str, bool]] = None) -> List[CatalogEntry]:
    """Entries that are checked by default, after config overrides."""
    if not isinstance(overrides, dict):
        overrides = {}
    return [entry for entry in catalog if overrides.get(entry.key, entry.default_selected)]


def select_by_keys(catalog: Sequence[CatalogEntry], keys: Iterable[str]) -> List[CatalogEntry]:
    """Entries named in ``keys``, kept in catalog order."""
    wanted = {key.strip() for key in keys if key.strip()}
    unknown = wanted - {entry.key for entry in catalog}
    if unknown:
        raise ValueError(f"Unknown task(s): {', '.join(sorted(unknown))}")
    return [entry for entry in catalog if entry.key in wanted]


def _render_menu(catalog: Sequence[CatalogEntry], checked: List[bool]):
    print(f"\n{Fore.CYAN}{Style.BRIGHT}Select maintenance tasks to run:")
    for index, (entry, is_checked) in enumerate(zip(catalog, checked), start=1):
        mark = f"{Fore.GREEN}[x]" if is_checked else "[ ]"
        print(f"  {mark}{Style.RESET_ALL} {index}. {entry.title} {Style.DIM}- {entry.description}")
    print(f"{Style.DIM}Enter numbers to toggle (e.g. 1 3), 'a' for all, 'n' for none, Enter to start.")


def prompt_selection(catalog: Sequence[CatalogEntry],
                     overrides: Optional[Dict[str, bool]] = None,
                     input_fn: Callable[[str], str] = input) -> List[CatalogEntry]:
    """Interactive multi-select; returns the checked entries in catalog order."""
    defaults = {entry.key for entry in default_selection(catalog, overrides)}
    checked = [entry.key in defaults for entry in catalog]

    while True:
        _render_menu(catalog, checked)
        try:
            answer = input_fn("> ").strip().lower()
        except EOFError:
            answer = ''

        if not answer:
            break
        if answer in ('a', 'all'):
            checked = [True] * len(catalog)
            continue
        if answer in ('n', 'none'):
            checked = [False] * len(catalog)
            continue

        for token in answer.replace(',', ' ').split():
            if token.isdigit() and 1 <= int(token) <= len(catalog):
                checked[int(token) - 1] = not checked[int(token) - 1]
            else:
                print(f"{Fore.RED}Invalid choice: {token}")

    return [entry for entry, is_checked in zip(catalog, checked) if is_checked]
