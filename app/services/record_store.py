"""Key/value record store with set indexes, backed by two SQL tables.

Values are JSON documents. Every write bumps the record's ``version`` so
callers can do optimistic compare-and-set writes. Nothing here commits; the
service that owns the unit of work calls ``commit()``.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.record import Record, SetMember


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore:
    def __init__(self, db: Session):
        self.db = db

    # -- single keys ---------------------------------------------------------

    def get(self, key: str) -> Any | None:
        rec = self.db.get(Record, key)
        if rec is None:
            return None
        return json.loads(rec.value_json)

    def get_versioned(self, key: str) -> tuple[Any, int] | None:
        rec = self.db.get(Record, key)
        if rec is None:
            return None
        return json.loads(rec.value_json), rec.version

    def exists(self, key: str) -> bool:
        return self.db.get(Record, key) is not None

    def set(self, key: str, value: Any) -> int:
        """Unconditional upsert. Returns the new version."""
        payload = json.dumps(value, ensure_ascii=False)
        rec = self.db.get(Record, key)
        if rec is None:
            rec = Record(key=key, value_json=payload, version=1)
            self.db.add(rec)
        else:
            rec.value_json = payload
            rec.version = (rec.version or 0) + 1
            rec.updated_at = _now()
        self.db.flush()
        return rec.version

    def set_if_version(self, key: str, value: Any, expected_version: int) -> bool:
        """Write only if nobody else wrote since ``expected_version`` was read."""
        res = self.db.execute(
            update(Record)
            .where(Record.key == key, Record.version == expected_version)
            .values(
                value_json=json.dumps(value, ensure_ascii=False),
                version=expected_version + 1,
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            return False
        # Keep any identity-mapped copy in step with the row we just wrote.
        rec = self.db.get(Record, key)
        if rec is not None:
            self.db.refresh(rec)
        return True

    def delete(self, key: str) -> bool:
        rec = self.db.get(Record, key)
        if rec is None:
            return False
        self.db.delete(rec)
        self.db.flush()
        return True

    def lock(self, key: str) -> bool:
        """Row-lock ``key`` until the surrounding transaction ends. False if the key does not exist."""
        rec = self.db.execute(
            select(Record).where(Record.key == key).with_for_update()
        ).scalar_one_or_none()
        return rec is not None

    # -- sets ----------------------------------------------------------------

    def sadd(self, set_key: str, *members: str) -> int:
        added = 0
        for m in members:
            if self.db.get(SetMember, (set_key, m)) is None:
                self.db.add(SetMember(set_key=set_key, member=m))
                added += 1
        self.db.flush()
        return added

    def srem(self, set_key: str, *members: str) -> int:
        removed = 0
        for m in members:
            row = self.db.get(SetMember, (set_key, m))
            if row is not None:
                self.db.delete(row)
                removed += 1
        self.db.flush()
        return removed

    def smembers(self, set_key: str) -> set[str]:
        rows = self.db.execute(select(SetMember.member).where(SetMember.set_key == set_key)).scalars().all()
        return set(rows)

    def sismember(self, set_key: str, member: str) -> bool:
        return self.db.get(SetMember, (set_key, member)) is not None

    # -- unit of work --------------------------------------------------------

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
