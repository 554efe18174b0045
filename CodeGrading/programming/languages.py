# programming/languages.py
"""Language registry: maps a question's language key to what the evaluator needs to run it."""
from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import UnknownLanguage


@dataclass(frozen=True)
class Language:
    key: str
    name: str
    image: str
    extension: str
    command: Tuple[str, ...]
    harness: str = "python"
    # False where the runtime misbehaves under an address-space rlimit (the JVM, for one);
    # the container memory limit is then the only bound.
    memory_rlimit: bool = True

    def source_name(self, stem: str) -> str:
        return f"{stem}{self.extension}"

    def local_command(self) -> List[str]:
        """Interpreter used by the local backend (the worker's own Python)."""
        if self.harness == "python":
            return [sys.executable]
        return list(self.command)


_LANGUAGES = {
    "python3.10": Language("python3.10", "Python 3.10", "python:3.10", ".py", ("python",)),
    "python3.11": Language("python3.11", "Python 3.11", "python:3.11", ".py", ("python",)),
    "python3.12": Language("python3.12", "Python 3.12", "python:3.12", ".py", ("python",)),
}

DEFAULT_LANGUAGE = "python3.11"


def get(key: Optional[str]) -> Language:
    try:
        return _LANGUAGES[key or ""]
    except KeyError:
        raise UnknownLanguage(key) from None


def choices() -> List[Tuple[str, str]]:
    return [(lang.key, lang.name) for lang in _LANGUAGES.values()]
