"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

Everything is stored in plain Python dicts keyed by UUID, suitable for local
development, demos and integration testing without a real database.  Unlike
a bare dict backend, the unit of work here is transactional: writes are
staged on the unit of work and only reach the shared database on commit(),
all at once and under the database lock.  rollback() simply drops them.

To swap in a real database (e.g. SQLAlchemy + PostgreSQL) later, implement
the same Abstract* interfaces from application.py and override get_uow() in
api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import date
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from application import (
    AbstractAllocationRepository,
    AbstractAnchorRuleRepository,
    AbstractAuditTrailRepository,
    AbstractBlackoutRepository,
    AbstractMilestoneRepository,
    AbstractNoticeRepository,
    AbstractProjectRepository,
    AbstractResourceRepository,
    AbstractSnapshotRepository,
    AbstractUnitOfWork,
    PersistenceError,
)
from model import Allocation, ScheduleSnapshot

logger = logging.getLogger("schedule_engine.infrastructure")

# (store name, {key: value}) pairs handed to InMemoryDatabase.apply()
StagedWrites = List[Tuple[str, Dict[Hashable, Any]]]


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict holding committed rows of one entity type."""


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process - restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    STORES = (
        "projects",
        "snapshots",
        "resources",
        "blackouts",
        "audit_trail",
        "anchor_rules",
        "milestones",
        "notices",
    )

    def __init__(self):
        self.projects:     _Store = _Store()
        self.snapshots:    _Store = _Store()
        self.resources:    _Store = _Store()
        self.blackouts:    _Store = _Store()
        self.audit_trail:  _Store = _Store()
        self.anchor_rules: _Store = _Store()   # project_id → tuple of AnchorRule
        self.milestones:   _Store = _Store()
        self.notices:      _Store = _Store()
        self.lock = threading.RLock()
        # Called with the staged writes right before they are applied; raising
        # aborts the whole commit.  Used to simulate storage failures.
        self.before_commit: Optional[Callable[[StagedWrites], None]] = None

    def snapshot_of(self, name: str) -> Dict[Hashable, Any]:
        with self.lock:
            return dict(getattr(self, name))

    def apply(self, writes: StagedWrites) -> None:
        with self.lock:
            if self.before_commit is not None:
                self.before_commit(writes)
            for name, rows in writes:
                getattr(self, name).update(rows)


# Module-level singleton - shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Transaction view
# ---------------------------------------------------------------------------

class _TxView:
    """One store as seen from inside a unit of work: committed rows plus staged writes."""

    def __init__(self, db: InMemoryDatabase, name: str, pending: Dict[str, Dict[Hashable, Any]]):
        self._db = db
        self._name = name
        self._pending = pending

    def fetch(self, key: Hashable):
        staged = self._pending.get(self._name, {})
        if key in staged:
            return staged[key]
        return self._db.snapshot_of(self._name).get(key)

    def put(self, obj) -> None:
        self.put_key(obj.id, obj)

    def put_key(self, key: Hashable, value: Any) -> None:
        self._pending.setdefault(self._name, {})[key] = value

    def all(self) -> list:
        rows = self._db.snapshot_of(self._name)
        rows.update(self._pending.get(self._name, {}))
        return list(rows.values())


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, view: _TxView): self._s = view
    def get(self, project_id):        return self._s.fetch(project_id)
    def list_all(self):               return self._s.all()
    def save(self, project):          self._s.put(project)


class InMemorySnapshotRepository(AbstractSnapshotRepository):
    def __init__(self, view: _TxView): self._s = view
    def get(self, snapshot_id):       return self._s.fetch(snapshot_id)
    def list_for_project(self, project_id):
        return sorted(
            (s for s in self._s.all() if s.project_id == project_id),
            key=lambda s: s.version,
            reverse=True,
        )
    def latest_for_project(self, project_id):
        snapshots = self.list_for_project(project_id)
        return snapshots[0] if snapshots else None
    def save(self, snapshot):         self._s.put(snapshot)


class InMemoryResourceRepository(AbstractResourceRepository):
    def __init__(self, view: _TxView): self._s = view
    def get(self, resource_id):       return self._s.fetch(resource_id)
    def list_all(self):               return self._s.all()
    def save(self, resource):         self._s.put(resource)


class InMemoryBlackoutRepository(AbstractBlackoutRepository):
    def __init__(self, view: _TxView): self._s = view
    def list_all(self):               return self._s.all()
    def list_for_resource(self, resource_id):
        return [b for b in self._s.all() if b.resource_ref == resource_id]
    def save(self, blackout):         self._s.put(blackout)


class InMemoryAllocationRepository(AbstractAllocationRepository):
    """
    Allocations are read off the latest snapshot of every project: each phase
    with a resource_ref and both dates books that resource for its range.
    """

    def __init__(self, view: _TxView): self._s = view

    def list_in_window(
        self, start: date, end: date, resource_id: Optional[uuid.UUID] = None
    ) -> List[Allocation]:
        latest: Dict[uuid.UUID, ScheduleSnapshot] = {}
        for snapshot in self._s.all():
            current = latest.get(snapshot.project_id)
            if current is None or snapshot.version > current.version:
                latest[snapshot.project_id] = snapshot

        allocations = []
        for snapshot in latest.values():
            for phase in snapshot.phases:
                if phase.resource_ref is None or not phase.is_scheduled:
                    continue
                if resource_id is not None and phase.resource_ref != resource_id:
                    continue
                if phase.start_date > end or phase.end_date < start:
                    continue
                allocations.append(
                    Allocation(
                        resource_ref=phase.resource_ref,
                        start_date=phase.start_date,
                        end_date=phase.end_date,
                        project_id=snapshot.project_id,
                        phase_name=phase.name,
                    )
                )
        return allocations


class InMemoryAuditTrailRepository(AbstractAuditTrailRepository):
    def __init__(self, view: _TxView): self._s = view
    def list_for_project(self, project_id):
        return [e for e in self._s.all() if e.project_id == project_id]
    def save(self, entry):            self._s.put(entry)


class InMemoryAnchorRuleRepository(AbstractAnchorRuleRepository):
    def __init__(self, view: _TxView): self._s = view
    def list_for_project(self, project_id):
        return list(self._s.fetch(project_id) or ())
    def replace_for_project(self, project_id, rules):
        self._s.put_key(project_id, tuple(rules))


class InMemoryMilestoneRepository(AbstractMilestoneRepository):
    def __init__(self, view: _TxView): self._s = view
    def list_for_project(self, project_id):
        return [m for m in self._s.all() if m.project_id == project_id]
    def save(self, milestone):        self._s.put(milestone)


class InMemoryNoticeRepository(AbstractNoticeRepository):
    def __init__(self, view: _TxView): self._s = view
    def list_for_project(self, project_id):
        return [n for n in self._s.all() if n.project_id == project_id]
    def save(self, notice):           self._s.put(notice)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  Writes are staged per unit of work;
    commit() applies them to the shared database in one step and rollback()
    discards them.  Entering the context starts from a clean stage.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._pending: Dict[str, Dict[Hashable, Any]] = {}

        def view(name: str) -> _TxView:
            return _TxView(db, name, self._pending)

        self.projects    = InMemoryProjectRepository(view("projects"))
        self.snapshots    = InMemorySnapshotRepository(view("snapshots"))
        self.resources    = InMemoryResourceRepository(view("resources"))
        self.blackouts    = InMemoryBlackoutRepository(view("blackouts"))
        self.allocations  = InMemoryAllocationRepository(view("snapshots"))
        self.audit_trail  = InMemoryAuditTrailRepository(view("audit_trail"))
        self.anchor_rules = InMemoryAnchorRuleRepository(view("anchor_rules"))
        self.milestones   = InMemoryMilestoneRepository(view("milestones"))
        self.notices      = InMemoryNoticeRepository(view("notices"))

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._pending.clear()
        return self

    def commit(self) -> None:
        if not self._pending:
            return
        writes = [(name, dict(rows)) for name, rows in self._pending.items()]
        self._pending.clear()
        try:
            self._db.apply(writes)
        except Exception as exc:
            logger.error("Commit of %d store(s) failed: %s", len(writes), exc)
            raise PersistenceError(f"Could not persist changes: {exc}") from exc

    def rollback(self) -> None:
        self._pending.clear()
