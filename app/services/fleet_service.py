from datetime import date
from typing import Optional

from app.core.errors import NotFoundError, ValidationError
from app.schemas.fleet import Car, CarUpsert
from app.services.record_store import RecordStore
from app.services.rental_repository import touch_calendar

ALL_CARS = "cars:all"

DEFAULT_FLEET = [
    {"id": "lamborghini-h-2015", "brand": "Lamborghini", "model": "Huracán", "year": 2015,
     "price": {"daily": 1399, "weekly": 8499}, "displayOrder": 1},
    {"id": "corvette-c8", "brand": "Chevrolet", "model": "Corvette C8", "year": 2023,
     "price": {"daily": 599, "weekly": 3599}, "displayOrder": 2},
    {"id": "porsche-911-carrera", "brand": "Porsche", "model": "911 Carrera", "year": 2022,
     "price": {"daily": 450, "weekly": 2799}, "displayOrder": 3},
]


def car_key(car_id: str) -> str:
    return f"car:{car_id}"


def unavailable_key(car_id: str) -> str:
    return f"car_availability:{car_id}"


def get_car(store: RecordStore, car_id: str) -> Optional[Car]:
    data = store.get(car_key(car_id))
    return Car.model_validate(data) if data else None


def require_car(store: RecordStore, car_id: str) -> Car:
    car = get_car(store, car_id)
    if not car:
        raise NotFoundError("Car not found", cause=f"no record for car:{car_id}")
    return car


def list_cars(store: RecordStore, homepage_only: bool = False) -> list[Car]:
    cars = [c for c in (get_car(store, cid) for cid in store.smembers(ALL_CARS)) if c]
    if homepage_only:
        cars = [c for c in cars if c.showOnHomepage]
    cars.sort(key=lambda c: (c.displayOrder, c.id))
    return cars


def upsert_car(store: RecordStore, car_id: str, payload: CarUpsert) -> Car:
    existing = get_car(store, car_id)
    order = payload.displayOrder
    if order is None:
        order = existing.displayOrder if existing else len(store.smembers(ALL_CARS)) + 1
    car = Car(id=car_id, **payload.model_dump(exclude={"displayOrder"}), displayOrder=order)
    store.set(car_key(car_id), car.model_dump(mode="json"))
    store.sadd(ALL_CARS, car_id)
    touch_calendar(store, car_id)
    store.commit()
    return car


def get_unavailable_dates(store: RecordStore, car_id: str) -> list[date]:
    raw = store.get(unavailable_key(car_id)) or []
    return sorted(date.fromisoformat(d) for d in raw)


def set_unavailable_dates(store: RecordStore, car_id: str, dates: list[date]) -> list[date]:
    require_car(store, car_id)
    if len(dates) > 366:
        raise ValidationError("Too many blocked dates", cause=f"{len(dates)} dates submitted, limit 366")
    clean = sorted(set(dates))
    store.set(unavailable_key(car_id), [d.isoformat() for d in clean])
    touch_calendar(store, car_id)
    store.commit()
    return clean


def lock_car(store: RecordStore, car_id: str) -> None:
    """Row-lock the car for the rest of the transaction (serializes date writes per car)."""
    if not store.lock(car_key(car_id)):
        raise NotFoundError("Car not found", cause=f"no record for car:{car_id}")


def seed_default_fleet(store: RecordStore) -> int:
    """Insert the default fleet if no car exists yet. Returns the number inserted."""
    if store.smembers(ALL_CARS):
        return 0
    for c in DEFAULT_FLEET:
        car = Car.model_validate(c)
        store.set(car_key(car.id), car.model_dump(mode="json"))
        store.sadd(ALL_CARS, car.id)
    store.commit()
    return len(DEFAULT_FLEET)
