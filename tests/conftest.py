import os
import tempfile

# Point the app at throwaway storage before chitfund.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="chitfund-uploads-"))

from datetime import date, datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chitfund.database import Base, get_db
from chitfund.main import app
from chitfund.models import UserRole
from chitfund.services import auction, groups, loans, reconciliation


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def clock(monkeypatch):
    """Freeze the services' clock; move it by assigning `clock.now`."""
    state = SimpleNamespace(now=datetime(2024, 1, 1, 9, 0))
    for module in (auction, loans, reconciliation):
        monkeypatch.setattr(module, "utcnow", lambda: state.now)
    return state


# ── Factories ──

@pytest.fixture
def org(db):
    """One department, two mandals, two branches under each."""
    dept = groups.create_department(db, "Hyderabad Region")
    mandals, branches = [], []
    for m in range(2):
        mandal = groups.create_mandal(db, f"Mandal {m + 1}", dept.id)
        mandals.append(mandal)
        for b in range(2):
            branches.append(groups.create_branch(db, f"Branch {m + 1}{'ab'[b]}", mandal.id, code=f"BR{m + 1}{b}"))
    return SimpleNamespace(department=dept, mandals=mandals, branches=branches)


@pytest.fixture
def make_agent(db, org):
    def _make(name="Ravi (agent)", branch=None):
        branch = branch or org.branches[0]
        return groups.create_user(db, name, role=UserRole.AGENT, branch_id=branch.id)
    return _make


@pytest.fixture
def make_group(db, org):
    """Build a chit group with fresh members; active unless told otherwise."""
    counter = {"n": 0}

    def _make(branch=None, members=3, chit_value=100000, commission=5, duration=3,
              start=date(2024, 1, 1), activate=True, name=None):
        counter["n"] += 1
        branch = branch or org.branches[0]
        name = name or f"Group {counter['n']}"
        group = groups.create_group(
            db, name=name, branch_id=branch.id, chit_value=chit_value,
            commission_percentage=commission, duration=duration,
            max_members=members, start_date=start,
        )
        users = []
        for k in range(members):
            user = groups.create_user(db, f"{name} member {k + 1}", branch_id=branch.id,
                                      phone=f"98480{counter['n']:02d}{k:03d}")
            groups.add_member(db, group.id, user.id)
            users.append(user)
        if activate:
            groups.activate_group(db, group.id)
        return SimpleNamespace(group=group, members=users, branch=branch)

    return _make
