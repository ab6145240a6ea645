"""Reference numbering: ephemeral [#N] aliases for durable message ids.

A ReferenceMap lives for exactly one build + parse cycle. The context
builder threads it through every section in emission order; the parser
resolves the model's citations against it. Numbers are always 1..N with
no gaps, and a number is never handed out twice within one map.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

logger = logging.getLogger("chatwire.numbering")


@dataclass(frozen=True)
class RefEntry:
    message_id: str
    contact_id: Optional[str] = None


class ReferenceMap:
    """Accumulator that assigns and resolves reference numbers."""

    def __init__(self):
        self._entries: list[RefEntry] = []
        self._by_message: dict[str, int] = {}

    def assign(self, message_id: Optional[str], contact_id: Optional[str] = None) -> Optional[int]:
        """Assign the next number to message_id.

        Messages without a durable id get no number (None). Returns the
        existing number if this message was already emitted in this build.
        """
        if not message_id:
            return None
        existing = self._by_message.get(message_id)
        if existing is not None:
            logger.debug(f"Message {message_id} already numbered #{existing}, reusing")
            return existing
        self._entries.append(RefEntry(message_id=message_id, contact_id=contact_id))
        number = len(self._entries)
        self._by_message[message_id] = number
        return number

    def rollback(self, size: int):
        """Forget every number above size (a section that failed mid-way)."""
        for entry in self._entries[size:]:
            self._by_message.pop(entry.message_id, None)
        del self._entries[size:]

    @property
    def next_number(self) -> int:
        return len(self._entries) + 1

    def resolve(self, number: int) -> Optional[str]:
        """Durable id for number, or None. Unknown numbers are a soft failure."""
        entry = self.entry(number)
        return entry.message_id if entry else None

    def entry(self, number: int) -> Optional[RefEntry]:
        if 1 <= number <= len(self._entries):
            return self._entries[number - 1]
        return None

    def number_of(self, message_id: str) -> Optional[int]:
        return self._by_message.get(message_id)

    def items(self) -> Iterator[tuple[int, RefEntry]]:
        for index, entry in enumerate(self._entries, start=1):
            yield index, entry

    def as_dict(self) -> dict[int, str]:
        return {n: e.message_id for n, e in self.items()}

    @classmethod
    def from_dict(cls, mapping: dict, contact_id: Optional[str] = None) -> "ReferenceMap":
        """Rebuild a map from {number: message_id}; numbers must be 1..N, ids unique."""
        ref_map = cls()
        for expected, number in enumerate(sorted(int(k) for k in mapping), start=1):
            if number != expected:
                raise ValueError(f"Reference numbers must be contiguous from 1, got gap at #{expected}")
            message_id = mapping.get(number, mapping.get(str(number)))
            if not message_id or message_id in ref_map._by_message:
                raise ValueError(f"Reference #{number} repeats or lacks a message id: {message_id!r}")
            ref_map.assign(message_id, contact_id)
        return ref_map

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, number: object) -> bool:
        return isinstance(number, int) and 1 <= number <= len(self._entries)
