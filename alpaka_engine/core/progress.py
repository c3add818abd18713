"""
Progress Feed

Append-only event log per job (or per execution instance when a run has no
job). Readers page through it by offset:

    feed = ProgressFeed(db)
    feed.append(job_id, "node_completed", "Node summary completed (1200ms)")
    page = feed.read(job_id, offset=0)
    # page.lines, page.next_offset, page.has_more

Offsets are 0-based and strictly increasing per stream; one worker writes
a given stream at a time.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.progress import ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500


@dataclass
class ProgressPage:
    lines: List[str]
    offset: int
    next_offset: int
    total: int
    has_more: bool
    events: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lines": self.lines,
            "offset": self.offset,
            "nextOffset": self.next_offset,
            "total": self.total,
            "hasMore": self.has_more,
            "events": self.events,
        }


class ProgressFeed:
    """Writer and reader for progress events."""

    def __init__(self, db: Session):
        self.db = db

    def append(self, stream_id: str, event: str, line: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Add one event at the end of the stream. Flushes, the caller commits.

        Returns:
            Offset assigned to the event
        """
        last = (
            self.db.query(func.max(ProgressEvent.offset))
            .filter(ProgressEvent.stream_id == stream_id)
            .scalar()
        )
        offset = 0 if last is None else last + 1

        self.db.add(ProgressEvent(
            stream_id=stream_id,
            offset=offset,
            event=event,
            line=line,
            payload=payload,
        ))
        self.db.flush()
        return offset

    def read(self, stream_id: str, offset: int = 0, limit: int = DEFAULT_PAGE_SIZE) -> ProgressPage:
        """Events with offset >= `offset`, at most `limit` of them."""
        offset = max(offset, 0)
        total = (
            self.db.query(func.count(ProgressEvent.id))
            .filter(ProgressEvent.stream_id == stream_id)
            .scalar()
        ) or 0

        rows = (
            self.db.query(ProgressEvent)
            .filter(ProgressEvent.stream_id == stream_id, ProgressEvent.offset >= offset)
            .order_by(ProgressEvent.offset)
            .limit(limit)
            .all()
        )

        next_offset = rows[-1].offset + 1 if rows else offset
        return ProgressPage(
            lines=[row.line for row in rows],
            offset=offset,
            next_offset=next_offset,
            total=total,
            has_more=next_offset < total,
            events=[
                {
                    "offset": row.offset,
                    "event": row.event,
                    "line": row.line,
                    "payload": row.payload,
                    "createdAt": row.created_at.isoformat() if row.created_at else None,
                }
                for row in rows
            ],
        )
