"""Reference catalog: a remote's advertised refs as uniform records."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from typing import Any, Iterable, List

from git import GitCommandError

from .errors import RefListError

HEADS_PREFIX = "refs/heads/"

_OBJECT_ID = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


@dataclass(frozen=True)
class RefRecord:
    """A reference name and the object id it points to."""

    name: str
    target_id: str

    @property
    def short_name(self) -> str:
        if self.name.startswith(HEADS_PREFIX):
            return self.name[len(HEADS_PREFIX):]
        return self.name

    @property
    def is_branch(self) -> bool:
        return self.name.startswith(HEADS_PREFIX)


def parse_ls_remote(text: str) -> List[RefRecord]:
    """Parse `git ls-remote` output into RefRecords.

    Blank lines, malformed lines and peeled tag entries (``^{}``) are skipped.
    The first occurrence of a name wins.
    """
    records: List[RefRecord] = []
    seen: set[str] = set()
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        target, name = parts[0].lower(), parts[1].strip()
        if name.endswith("^{}") or not _OBJECT_ID.match(target):
            continue
        if name in seen:
            continue
        seen.add(name)
        records.append(RefRecord(name=name, target_id=target))
    return records


def _coerce(item: Any) -> RefRecord:
    if isinstance(item, RefRecord):
        return item
    name, target = item
    return RefRecord(name=str(name), target_id=str(target))


def list_references(source: Any) -> List[RefRecord]:
    """Enumerate references advertised by ``source``.

    ``source`` is anything with a ``list_references()`` method returning
    RefRecords or ``(name, target_id)`` pairs. No ordering is guaranteed.

    Raises:
        RefListError: If the source cannot enumerate its references
    """
    try:
        items: Iterable[Any] = source.list_references()
        return [_coerce(item) for item in items]
    except RefListError:
        raise
    except (GitCommandError, OSError, subprocess.TimeoutExpired, ValueError, TypeError) as e:
        raise RefListError(f"Failed to list references: {e}") from e
