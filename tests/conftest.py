from __future__ import annotations

import copy
from datetime import date, datetime, time, timezone
from types import SimpleNamespace

import pytest
from bson import ObjectId

from schemas import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    Examination,
    EyeVision,
    IntraocularPressure,
    Vision,
)

NOW = datetime(2025, 6, 2, 9, 5, tzinfo=timezone.utc)


def _matches(doc: dict, query: dict) -> bool:
    return all(doc.get(k) == v for k, v in query.items())


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def limit(self, n):
        return FakeCursor(self._docs[:n])

    def __iter__(self):
        return iter(self._docs)


class FakeCollection:
    """Just enough of a pymongo collection for the persistence layer."""

    def __init__(self):
        self.docs = []

    def insert_one(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    def find_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query):
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query)])

    def update_one(self, query, update):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update["$set"]))
                return SimpleNamespace(matched_count=1)
        return SimpleNamespace(matched_count=0)

    def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))


class FakeDatabase:
    name = "encounters_test"

    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())

    def list_collection_names(self):
        return list(self.collections)


@pytest.fixture
def fake_db(monkeypatch):
    import database

    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def appointment() -> Appointment:
    return Appointment(
        id="apt-1",
        patient_id="PT-100",
        doctor_id="doc-1",
        date=date(2025, 6, 2),
        start_time=time(9, 0),
        end_time=time(9, 30),
        type=AppointmentType.FOLLOW_UP,
        status=AppointmentStatus.SCHEDULED,
        notes="Blurry vision when reading",
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.fixture
def examination() -> Examination:
    return Examination(
        id="ex-1",
        patient_id="PT-100",
        doctor_id="doc-1",
        appointment_id="apt-1",
        date=date(2025, 6, 2),
        chief_complaint="",
        vision=Vision(right_eye=EyeVision(uncorrected="20/40")),
        intraocular_pressure=IntraocularPressure(right_eye=18.0),
        plan="Monitor",
        created_at=NOW,
        updated_at=NOW,
    )
