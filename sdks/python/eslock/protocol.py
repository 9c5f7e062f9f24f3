"""Lease decision rules shared by every document store."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .models import LockDocument, UpsertResult, format_time

# Evaluated by Elasticsearch inside the update, so the read and the write of
# the lease happen atomically on the shard. A scripted upsert runs this even
# when the document does not exist yet, with ctx._source set to the upsert
# body.
ACQUIRE_SCRIPT = """
if (ctx._source.owner != params.owner && ZonedDateTime.parse(ctx._source.expires).isAfter(ZonedDateTime.parse(params.now))) {
    ctx.op = "none";
} else {
    ctx._source.expires = params.expires;
    if (ctx._source.owner != params.owner) {
        ctx._source.owner = params.owner;
        ctx._source.acquired = params.acquired;
    }
}
""".strip()

INDEX_MAPPING = {
    "mappings": {
        "properties": {
            "owner": {"type": "keyword"},
            "acquired": {"type": "date"},
            "expires": {"type": "date"},
        }
    }
}


@dataclass(frozen=True)
class LeaseScript:
    """A single acquire/renew/takeover request for one lock.

    `now` doubles as the acquisition time when the request creates the
    document or takes it over.
    """
    owner: str
    now: datetime
    expires: datetime

    source = ACQUIRE_SCRIPT

    def params(self) -> Dict[str, Any]:
        return {
            "now": format_time(self.now),
            "owner": self.owner,
            "acquired": format_time(self.now),
            "expires": format_time(self.expires),
        }

    def upsert_document(self) -> LockDocument:
        return LockDocument(owner=self.owner, acquired=self.now, expires=self.expires)

    def decide(self, current: Optional[LockDocument]) -> Tuple[UpsertResult, LockDocument]:
        """Apply the lease rules to `current` without touching any store.

        Returns the outcome and the document as it should be afterwards.
        """
        if current is None:
            return UpsertResult.CREATED, self.upsert_document()
        if current.owner == self.owner:
            return UpsertResult.UPDATED, LockDocument(
                owner=current.owner, acquired=current.acquired, expires=self.expires
            )
        if current.expires > self.now:
            return UpsertResult.NOOP, current
        return UpsertResult.UPDATED, self.upsert_document()


def release_query(lock_id: str, owner: str) -> Dict[str, Any]:
    """Query matching the lock document only while `owner` still holds it."""
    return {
        "query": {
            "bool": {
                "must": [
                    {"term": {"_id": lock_id}},
                    {"term": {"owner": owner}},
                ]
            }
        }
    }
