"""
Shared fixtures for the schedule engine tests.
"""
import uuid
from datetime import date
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from api import app, get_uow
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import Phase, ScheduleSnapshot


def d(text: str) -> date:
    return date.fromisoformat(text)


def make_phase(
    name: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    sort_order: int = 0,
    dependency_ref: Optional[uuid.UUID] = None,
    resource_ref: Optional[uuid.UUID] = None,
    id: Optional[uuid.UUID] = None,
) -> Phase:
    return Phase(
        id=id or uuid.uuid4(),
        name=name,
        sort_order=sort_order,
        start_date=d(start) if start else None,
        end_date=d(end) if end else None,
        dependency_ref=dependency_ref,
        resource_ref=resource_ref,
    )


@pytest.fixture
def db():
    """A fresh in-memory database per test."""
    return InMemoryDatabase()


@pytest.fixture
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture
def client(db):
    """FastAPI test client wired to the per-test database."""
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def chain_snapshot():
    """Framing Crew → Insulation → Drywall, each depending on the previous one."""
    framing = make_phase("Framing Crew", "2024-02-01", "2024-02-14", sort_order=1)
    insulation = make_phase(
        "Insulation", "2024-03-01", "2024-03-10", sort_order=2, dependency_ref=framing.id
    )
    drywall = make_phase(
        "Drywall", "2024-03-11", "2024-03-20", sort_order=3, dependency_ref=insulation.id
    )
    return ScheduleSnapshot(project_id=uuid.uuid4(), phases=(framing, insulation, drywall))
