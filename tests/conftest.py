"""
Shared pytest fixtures for the CivicTrack test suite.

Provides:
    - engine / db: in-memory SQLite (StaticPool), tables created per test
    - clock: frozen, advanceable replacement for civictrack.core.clock.utcnow
    - seed: departments, category, teams and one user per role
    - client: FastAPI TestClient with get_db bound to the test session
    - token_for / auth: bearer tokens minted with PyJWT
    - make_report / walk_to: shortcuts that drive reports through the lifecycle
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ANALYTICS_REFRESH_INTERVAL_MINUTES", "0")

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import civictrack.models  # noqa: F401
from civictrack.core import clock as clock_module
from civictrack.core.config import settings
from civictrack.core.security import Principal
from civictrack.db.base import Base
from civictrack.models import AssigneeType, Department, ReportCategory, Team, User, UserRole
from civictrack.services import assignment_ledger, lifecycle, reports

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ── DB fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture()
def db(engine):
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(autouse=True)
def clock(monkeypatch):
    """Every service reads time through clock.utcnow; tests move it explicitly."""
    frozen = FrozenClock(T0)
    monkeypatch.setattr(clock_module, "utcnow", frozen)
    return frozen


# ── Directory and principals ─────────────────────────────────────────────────


def principal_for(user: User) -> Principal:
    return Principal(user_id=user.id, roles=(user.role,), department_id=user.department_id, team_id=user.team_id)


@pytest.fixture()
def seed(db):
    """Two departments with a team, a member and a supervisor each, plus citizens and an admin."""
    roads = Department(code="ROADS", name="Roads")
    lighting = Department(code="LIGHT", name="Street Lighting")
    closed = Department(code="OLD", name="Disbanded", is_active=False)
    db.add_all([roads, lighting, closed])
    db.flush()

    pothole = ReportCategory(name="Pothole", code="POTHOLE", department_id=roads.id)
    lamp = ReportCategory(name="Broken lamp", code="LAMP", department_id=lighting.id)
    retired = ReportCategory(name="Retired", code="RETIRED", department_id=roads.id, is_active=False)
    db.add_all([pothole, lamp, retired])
    db.flush()

    roads_team = Team(name="Roads crew A", department_id=roads.id)
    lighting_team = Team(name="Lighting crew", department_id=lighting.id)
    idle_team = Team(name="Roads crew B", department_id=roads.id, is_active=False)
    db.add_all([roads_team, lighting_team, idle_team])
    db.flush()

    def user(email, role, dept=None, team=None, active=True):
        u = User(
            email=email, name=email.split("@")[0], role=role, is_active=active,
            department_id=dept.id if dept else None, team_id=team.id if team else None,
        )
        db.add(u)
        return u

    users = SimpleNamespace(
        citizen=user("ada@example.org", UserRole.CITIZEN),
        neighbour=user("bo@example.org", UserRole.CITIZEN),
        member=user("mo@city.gov", UserRole.TEAM_MEMBER, roads, roads_team),
        teammate=user("tia@city.gov", UserRole.TEAM_MEMBER, roads, roads_team),
        lighting_member=user("lu@city.gov", UserRole.TEAM_MEMBER, lighting, lighting_team),
        inactive_member=user("ina@city.gov", UserRole.TEAM_MEMBER, roads, roads_team, active=False),
        supervisor=user("sue@city.gov", UserRole.DEPARTMENT_SUPERVISOR, roads),
        lighting_supervisor=user("lee@city.gov", UserRole.DEPARTMENT_SUPERVISOR, lighting),
        admin=user("root@city.gov", UserRole.SYSTEM_ADMIN),
    )
    db.commit()

    return SimpleNamespace(
        roads=roads,
        lighting=lighting,
        closed=closed,
        pothole=pothole,
        lamp=lamp,
        retired=retired,
        roads_team=roads_team,
        lighting_team=lighting_team,
        idle_team=idle_team,
        users=users,
        p=SimpleNamespace(**{name: principal_for(u) for name, u in vars(users).items()}),
    )


# ── Lifecycle shortcuts ──────────────────────────────────────────────────────


@pytest.fixture()
def make_report(db, seed):
    def _make(principal=None, category=None, lat=41.0, lng=29.0, title="Deep pothole on Main St", **kwargs):
        category = category or seed.pothole
        return reports.create_report(
            db, principal or seed.p.citizen, title, category_id=category.id, lat=lat, lng=lng, **kwargs
        )
    return _make


@pytest.fixture()
def walk_to(db, seed, clock):
    """Drive a report to a target status along the happy path, one hour per step."""

    def _walk(report, target: str, assignee=None):
        sup = seed.p.supervisor
        assignee = assignee or seed.p.member
        steps = ["assign", "accept", "complete_work", "approve"]
        stop = {"IN_PROGRESS": 1, "ACCEPTED": 2, "PENDING_APPROVAL": 3, "DONE": 4}[target]
        for step in steps[:stop]:
            clock.advance(hours=1)
            if step == "assign":
                lifecycle.assign_report(db, report.id, AssigneeType.USER, assignee.user_id, sup)
            elif step == "accept":
                active = assignment_ledger.active_assignment(db, report.id)
                lifecycle.accept_assignment(db, active.id, assignee)
            elif step == "complete_work":
                lifecycle.complete_work(db, report.id, assignee, notes="patched")
            else:
                lifecycle.approve_report(db, report.id, sup)
        db.refresh(report)
        return report

    return _walk


# ── API fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture()
def client(db):
    from fastapi.testclient import TestClient

    from civictrack.db.session import get_db
    from civictrack.main import app

    def _override():
        yield db

    app.dependency_overrides[get_db] = _override
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def token_for(principal: Principal) -> str:
    claims = {
        "sub": str(principal.user_id),
        "roles": [r.value for r in principal.roles],
        "department_id": principal.department_id,
        "team_id": principal.team_id,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


@pytest.fixture()
def auth():
    def _headers(principal: Principal) -> dict:
        return {"Authorization": f"Bearer {token_for(principal)}"}
    return _headers
