"""
ID list model and diff application.

An ID list is an append-only file of "+id" / "-id" lines. The store reads
it incrementally with byte-range requests and applies each new chunk to
a copy of the held membership set.
"""

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional

from shared.errors import IDListDesyncError


_LINE_SPLIT = re.compile(r"\r?\n")


@dataclass(frozen=True)
class IDList:
    """Membership set plus the sync cursor for one list."""
    name: str
    file_id: str
    creation_time: int
    url: str
    read_bytes: int = 0
    ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def fresh(cls, name: str, url: str, file_id: str, creation_time: int) -> "IDList":
        return cls(name=name, file_id=file_id, creation_time=creation_time, url=url)

    def contains(self, hashed_id: str) -> bool:
        return hashed_id in self.ids


def apply_diff(id_list: IDList, data: str, content_length: int) -> IDList:
    """Return a new IDList with the diff chunk applied and the cursor advanced.

    Raises IDListDesyncError when the chunk does not start on a diff line,
    which means the byte offset no longer lines up with the file.
    """
    if not data or data[0] not in "+-":
        raise IDListDesyncError(id_list.name, details={"read_bytes": id_list.read_bytes})

    ids = set(id_list.ids)
    for line in _LINE_SPLIT.split(data):
        if len(line) <= 1:
            continue
        unit_id = line[1:].strip()
        if line[0] == "+":
            ids.add(unit_id)
        elif line[0] == "-":
            ids.discard(unit_id)

    return replace(id_list, ids=frozenset(ids), read_bytes=id_list.read_bytes + content_length)


def parse_lookup_response(raw: Any) -> Optional[Dict[str, Dict[str, Any]]]:
    """Lookup table: list name -> {url, fileID, creationTime, size}."""
    if not isinstance(raw, dict):
        return None
    return {name: entry for name, entry in raw.items() if isinstance(entry, dict)}


def parse_bootstrap_lookup(raw: Any) -> Optional[List[str]]:
    """List names stored by the data adapter, as a JSON list or lookup object."""
    try:
        value = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError:
        return None
    if isinstance(value, list):
        return [str(name) for name in value]
    if isinstance(value, dict):
        return list(value.keys())
    return None


def serialize_for_adapter(id_list: IDList) -> str:
    return "".join(f"+{unit_id}\n" for unit_id in sorted(id_list.ids))
