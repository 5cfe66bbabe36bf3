import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["TZ_DEFAULT"] = "Asia/Kolkata"

import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sitehub.auth.security import create_access_token
from sitehub.db import Base, get_db
from sitehub.main import app
from sitehub.models.models import FileObject, Project, Role, User
from sitehub.services.permissions import ADMIN, EMPLOYEE, MANAGER, SITE_SUPERVISOR


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(bind=test_engine, autoflush=False, autocommit=False)


@pytest.fixture
def db():
    """Fresh schema per test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


def _make_user(session, username: str, role: Role) -> User:
    user = User(
        id=uuid.uuid4(),
        username=username,
        email=f"{username}@example.com",
        name=username.replace(".", " ").title(),
        password_hash="unused",
        is_active=True,
    )
    user.roles = [role]
    session.add(user)
    return user


@pytest.fixture
def users(db):
    """One user per role, keyed by role name"""
    roles = {name: Role(id=uuid.uuid4(), name=name) for name in (ADMIN, MANAGER, SITE_SUPERVISOR, EMPLOYEE)}
    db.add_all(roles.values())
    created = {
        ADMIN: _make_user(db, "admin.user", roles[ADMIN]),
        MANAGER: _make_user(db, "mira.manager", roles[MANAGER]),
        SITE_SUPERVISOR: _make_user(db, "sam.supervisor", roles[SITE_SUPERVISOR]),
        EMPLOYEE: _make_user(db, "eli.employee", roles[EMPLOYEE]),
    }
    db.commit()
    return created


@pytest.fixture
def projects(db):
    created = {
        "P1": Project(id=uuid.uuid4(), code="P1", name="Riverside Tower", status="in_progress"),
        "P2": Project(id=uuid.uuid4(), code="P2", name="Harbour Warehouse", status="in_progress"),
        "OLD": Project(
            id=uuid.uuid4(),
            code="OLD",
            name="Closed Mall Refit",
            status="completed",
            archived_at=datetime(2023, 12, 31, tzinfo=timezone.utc),
        ),
    }
    db.add_all(created.values())
    db.commit()
    return created


@pytest.fixture
def files(db):
    created = [
        FileObject(id=uuid.uuid4(), key=f"attendance/photo-{i}.jpg", original_name=f"photo-{i}.jpg",
                   content_type="image/jpeg", size_bytes=1024 * (i + 1))
        for i in range(2)
    ]
    db.add_all(created)
    db.commit()
    return created


@pytest.fixture
def auth_headers(users):
    """Build bearer headers for the user holding the given role"""
    def _headers(role: str) -> dict:
        user = users[role]
        token = create_access_token(str(user.id), roles=[role])
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
