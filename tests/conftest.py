import os
import sys
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


# Ensure `import backend.app...` works regardless of where pytest is run from.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Must be set before anything imports backend.app.config.
os.environ["DISABLE_DOTENV"] = "1"
os.environ["ADMISSION_STORE"] = "sql"
os.environ.setdefault("SECRET_KEY", "test_secret")


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite3"


@pytest.fixture()
def app(test_db_path: Path) -> FastAPI:
    """
    Create a FastAPI app wired to a temporary SQLite DB.

    We intentionally do NOT import `app.main` so no startup hooks run against the dev DB.
    """
    os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{test_db_path}"

    from backend.app import database as db

    engine = create_engine(
        os.environ["DATABASE_URL"],
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    # Patch the shared database module so router dependencies use the test DB.
    db.engine = engine
    db.SessionLocal = TestingSessionLocal

    # Import models so Base metadata is populated, then create tables.
    from backend.app.models import (  # noqa: F401
        academic_calendar,
        batch,
        program,
        program_offering,
        student_application,
        student_profile,
        user,
    )

    db.Base.metadata.drop_all(bind=engine)
    db.Base.metadata.create_all(bind=engine)

    from backend.app.api import program_offerings as program_offerings_api
    from backend.app.api import student_applications as student_applications_api
    from backend.app.api import student_profiles as student_profiles_api
    from backend.app.utils.error_handlers import register_error_handlers

    fastapi_app = FastAPI()
    fastapi_app.include_router(program_offerings_api.router)
    fastapi_app.include_router(student_applications_api.router)
    fastapi_app.include_router(student_profiles_api.router)
    register_error_handlers(fastapi_app)

    return fastapi_app


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def db_session(app: FastAPI):
    """
    Direct SQLAlchemy session bound to the same temporary SQLite DB used by the test app.
    """
    from backend.app import database as db

    session = db.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def session_factory(app: FastAPI):
    """Hands out extra sessions (one per thread in concurrency tests) and closes them."""
    from backend.app import database as db

    sessions = []

    def make():
        s = db.SessionLocal()
        sessions.append(s)
        return s

    yield make
    for s in sessions:
        s.close()


class Seeder:
    """Creates catalog/user/profile rows directly, the way an admin import would."""

    def __init__(self, db):
        self.db = db
        self._n = 0

    def _next(self) -> int:
        self._n += 1
        return self._n

    def calendar(self, *, is_active: bool = True, name: str = "2025/26 Regular"):
        from backend.app.models.academic_calendar import AcademicCalendar

        cal = AcademicCalendar(name=name, academic_year_range="2025/26", is_active=is_active)
        self.db.add(cal)
        self.db.commit()
        self.db.refresh(cal)
        return cal

    def offering(self, *, capacity: int | None = 10, is_open: bool = True, calendar=None, calendar_active: bool = True):
        from backend.app.models.batch import Batch
        from backend.app.models.program import Program
        from backend.app.models.program_offering import ProgramOffering

        n = self._next()
        calendar = calendar or self.calendar(is_active=calendar_active)
        program = Program(name=f"Program {n}", full_name=f"BSc Program {n}", level="Undergraduate", mode="Regular")
        self.db.add(program)
        self.db.flush()
        batch = Batch(name=f"Batch {n}", code=f"B{n}", intake_year=2025, program_id=program.id)
        self.db.add(batch)
        self.db.flush()
        offering = ProgramOffering(
            program_id=program.id,
            batch_id=batch.id,
            academic_calendar_id=calendar.id,
            is_open_for_apply=is_open,
            capacity=capacity,
        )
        self.db.add(offering)
        self.db.commit()
        self.db.refresh(offering)
        return offering

    def user(self, *, email: str | None = None, user_id: int | None = None):
        from backend.app.models.user import User

        n = self._next()
        user = User(email=email or f"user{n}@example.com", name=f"User {n}")
        if user_id is not None:
            user.id = user_id
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def profile(self, *, user=None, email: str | None = None, legacy_user_id: str | None = None, first_name: str = "Abebe"):
        from backend.app.models.student_profile import StudentProfile

        profile = StudentProfile(
            user_id=user.id if user is not None else None,
            email=email,
            legacy_user_id=legacy_user_id,
            first_name=first_name,
        )
        self.db.add(profile)
        self.db.commit()
        self.db.refresh(profile)
        return profile

    def applicant(self, *, email: str | None = None):
        """A user with a profile linked through the user relation."""
        user = self.user(email=email)
        profile = self.profile(user=user)
        return user, profile


@pytest.fixture()
def seed(db_session) -> Seeder:
    return Seeder(db_session)


def make_identity(user):
    from backend.app.utils.dependencies import UserIdentity

    return UserIdentity(user_id=int(user.id), email=user.email, user_document_id=user.document_id)


def auth_headers_for(user) -> dict:
    from backend.app.utils.jwt import create_access_token

    token = create_access_token({"sub": str(user.id), "email": user.email, "uid": user.document_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers():
    return auth_headers_for


@pytest.fixture()
def identity_for():
    return make_identity
