from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Iterator, List

LOGGER = logging.getLogger(__name__)

DEFAULT_SOURCE_FIELD = "documentName"
CITATION_SEPARATOR = "\n\n---\n\n"


class SourceSet:
    """Insertion-ordered set of citation identifiers, compared by exact string."""

    def __init__(self, items: Iterable[str] = ()) -> None:
        self._items: dict[str, None] = {}
        self.update(items)

    def add(self, item: str) -> bool:
        if item in self._items:
            return False
        self._items[item] = None
        return True

    def update(self, items: Iterable[str]) -> None:
        for item in items:
            self.add(item)

    def to_list(self) -> List[str]:
        return list(self._items)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)


def extract_sources(
    tool_result: Any,
    target: SourceSet,
    field: str = DEFAULT_SOURCE_FIELD,
) -> int:
    """Add citation values found in a list-of-records tool payload to ``target``.

    ``tool_result`` is the tool output as JSON text or an already decoded value.
    Returns the number of identifiers that were new to ``target``.
    """
    records = tool_result
    if isinstance(tool_result, (str, bytes)):
        try:
            records = json.loads(tool_result)
        except (json.JSONDecodeError, ValueError) as exc:
            LOGGER.debug("source_extract_skipped reason=undecodable error=%s", exc)
            return 0
    if not isinstance(records, list):
        return 0
    added = 0
    for record in records:
        if not isinstance(record, dict):
            continue
        value = record.get(field)
        if not _is_valid_source(value):
            continue
        if target.add(value):
            added += 1
    LOGGER.debug("source_extract_done added=%d total=%d", added, len(target))
    return added


def append_citations(answer: str, sources: Iterable[str], header: str) -> str:
    ordered = list(SourceSet(sources))
    if not ordered:
        return answer
    if header in answer:
        return answer
    lines = [f"{index}. `{source}`" for index, source in enumerate(ordered, 1)]
    return answer + CITATION_SEPARATOR + header + "\n" + "\n".join(lines) + "\n"


def _is_valid_source(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    stripped = value.strip()
    return bool(stripped) and stripped != "null"
