import uuid

from app.schemas.booking import AdminActor, Booking, HistoryEntry, SystemActor


def log_history(booking: Booking, actor: AdminActor | SystemActor, action: str, description: str, metadata: dict | None = None) -> HistoryEntry:
    entry = HistoryEntry(
        id=str(uuid.uuid4()),
        action=action,
        description=description,
        performedBy=actor.label,
        actor=actor,
        metadata=metadata or {},
    )
    booking.history.append(entry)
    return entry
