"""
Seed the local database with roles, users and projects for trying the
attendance API.

Usage:
  python scripts/seed_test_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (role name, username/email, project code).
It prints a bearer token per user at the end.
"""
import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sitehub.db import SessionLocal, Base, engine
from sitehub.models.models import User, Role, Project
from sitehub.auth.security import get_password_hash, create_access_token
from sitehub.services.permissions import ADMIN, MANAGER, SITE_SUPERVISOR, EMPLOYEE


def ensure_role(session, name: str, description: str = "") -> Role:
    role = session.query(Role).filter(Role.name == name).first()
    if role:
        if description and role.description != description:
            role.description = description
            session.add(role)
        return role
    role = Role(name=name, description=description or name.title())
    session.add(role)
    session.flush()
    return role


def ensure_user(session, username: str, email: str, name: str, password: str, roles: list) -> User:
    user = session.query(User).filter((User.username == username) | (User.email == email)).first()
    if not user:
        user = User(
            username=username,
            email=email,
            password_hash=get_password_hash(password),
            is_active=True,
            created_at=datetime.now(timezone.utc),
        )
        session.add(user)
    user.username = username
    user.email = email
    user.name = name
    # Keep an existing password
    if not user.password_hash:
        user.password_hash = get_password_hash(password)
    user.roles = session.query(Role).filter(Role.name.in_(roles)).all()
    session.flush()
    return user


def ensure_project(session, code: str, name: str, status: str = "in_progress", archived: bool = False) -> Project:
    project = session.query(Project).filter(Project.code == code).first()
    if not project:
        project = Project(code=code, name=name, created_at=datetime.now(timezone.utc))
        session.add(project)
    project.name = name
    project.status = status
    if archived and project.archived_at is None:
        project.archived_at = datetime.now(timezone.utc)
    elif not archived:
        project.archived_at = None
    session.flush()
    return project


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        ensure_role(session, ADMIN, "Administrator")
        ensure_role(session, MANAGER, "Manager")
        ensure_role(session, SITE_SUPERVISOR, "Site Supervisor")
        ensure_role(session, EMPLOYEE, "Employee")

        users = [
            ensure_user(session, "admin.user", "admin@example.com", "Admin User", "TestAdmin123!", [ADMIN]),
            ensure_user(session, "mira.manager", "mira.manager@example.com", "Mira Manager", "TestUser123!", [MANAGER]),
            ensure_user(session, "sam.supervisor", "sam.supervisor@example.com", "Sam Supervisor", "TestUser123!", [SITE_SUPERVISOR]),
            ensure_user(session, "eli.employee", "eli.employee@example.com", "Eli Employee", "TestUser123!", [EMPLOYEE]),
        ]

        ensure_project(session, "P1", "Riverside Tower")
        ensure_project(session, "P2", "Harbour Warehouse")
        ensure_project(session, "OLD", "Closed Mall Refit", status="completed", archived=True)

        session.commit()
        print("Seed completed: roles, users and projects upserted.")
        for user in users:
            token = create_access_token(str(user.id), roles=[r.name for r in user.roles])
            print(f"{user.username}: {token}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
