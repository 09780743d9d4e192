"""Execution log: append-only record of node visits.

One entry per visit, in visitation order. Loops revisit the same node id and
parallel branches interleave, so the order is not graph order.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from nodeflow.core.transforms import format_timestamp


def _utc_timestamp() -> str:
    return format_timestamp(datetime.now(UTC))


class TraceEntry(BaseModel):
    """One node visitation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    node_id: str
    type: str
    timestamp: str = Field(default_factory=_utc_timestamp)


class ExecutionLog:
    """Append-only trace owned by a single run."""

    def __init__(self):
        self._entries: list[TraceEntry] = []

    def record(self, node_id: str, node_type: str) -> TraceEntry:
        entry = TraceEntry(node_id=node_id, type=node_type)
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> list[TraceEntry]:
        return list(self._entries)

    def node_ids(self) -> list[str]:
        return [entry.node_id for entry in self._entries]

    def to_json(self) -> list[dict[str, Any]]:
        """Wire form: [{"nodeId", "type", "timestamp"}, ...]"""
        return [entry.model_dump(by_alias=True) for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)
