from datetime import datetime, timezone
from typing import Optional

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.schemas.booking import utcnow
from app.schemas.promo import PromoCreate, PromoRecord, PromoStats, PromoUpdate
from app.services.record_store import RecordStore

ALL_PROMOS = "promo:codes"


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def code_key(code: str) -> str:
    return f"promo:code:{normalize_code(code)}"


def stats_key(code: str) -> str:
    return f"promo:stats:{normalize_code(code)}"


def get_promo(store: RecordStore, code: str) -> Optional[PromoRecord]:
    data = store.get(code_key(code))
    return PromoRecord.model_validate(data) if data else None


def list_promos(store: RecordStore) -> list[PromoRecord]:
    items = [p for p in (get_promo(store, c) for c in store.smembers(ALL_PROMOS)) if p]
    items.sort(key=lambda p: p.updatedAt, reverse=True)
    return items


def create_promo(store: RecordStore, payload: PromoCreate) -> PromoRecord:
    code = normalize_code(payload.code)
    if not code:
        raise ValidationError("Promo code required")
    if store.exists(code_key(code)):
        raise ConflictError("Promo code already exists", cause=code)
    rec = PromoRecord(**payload.model_dump(exclude={"code"}), code=code)
    store.set(code_key(code), rec.model_dump(mode="json"))
    store.sadd(ALL_PROMOS, code)
    store.commit()
    return rec


def update_promo(store: RecordStore, code: str, payload: PromoUpdate) -> PromoRecord:
    rec = get_promo(store, code)
    if not rec:
        raise NotFoundError("Promo code not found", cause=normalize_code(code))
    data = rec.model_dump()
    data.update(payload.model_dump(exclude_unset=True))
    data["updatedAt"] = utcnow()
    updated = PromoRecord.model_validate(data)
    store.set(code_key(rec.code), updated.model_dump(mode="json"))
    store.commit()
    return updated


def delete_promo(store: RecordStore, code: str) -> None:
    if not store.delete(code_key(code)):
        raise NotFoundError("Promo code not found", cause=normalize_code(code))
    store.delete(stats_key(code))
    store.srem(ALL_PROMOS, normalize_code(code))
    store.commit()


def get_stats(store: RecordStore, code: str) -> PromoStats:
    data = store.get(stats_key(code))
    return PromoStats.model_validate(data) if data else PromoStats()


def increment_stats(store: RecordStore, code: str) -> PromoStats:
    """Count one use. Caller commits (runs inside the booking confirmation write)."""
    stats = get_stats(store, code)
    stats.totalUses += 1
    stats.lastUsedAt = utcnow()
    store.set(stats_key(code), stats.model_dump(mode="json"))
    return stats


def validate_promo(store: RecordStore, code: str, now: Optional[datetime] = None) -> PromoRecord:
    """Return a usable promo or raise ValidationError."""
    now = now or datetime.now(timezone.utc)
    code = normalize_code(code)
    if not code:
        raise ValidationError("Code required")
    rec = get_promo(store, code)
    if not rec or not rec.active:
        raise ValidationError("Invalid or inactive code", cause=code)
    if rec.expiresAt:
        exp = rec.expiresAt if rec.expiresAt.tzinfo else rec.expiresAt.replace(tzinfo=timezone.utc)
        if now > exp:
            raise ValidationError("Code expired", cause=f"{code} expired {exp.isoformat()}")
    if rec.maxRedemptions and get_stats(store, code).totalUses >= rec.maxRedemptions:
        raise ValidationError("Code has reached its redemption limit", cause=code)
    return rec
