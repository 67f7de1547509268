"""
Shared fixtures for the API tests: settings overrides, backend resets and
a small seeded academic structure.
"""

import os
from dataclasses import dataclass

os.environ.setdefault("USE_IN_MEMORY_BACKENDS", "true")

from fastapi.testclient import TestClient  # noqa: E402

from pecup.app import create_app  # noqa: E402
from pecup.config import Settings, get_settings  # noqa: E402
from pecup.dependencies import (  # noqa: E402
    get_academic_config,
    get_cache_backend,
    get_db_client,
    get_secure_url_limiter,
    get_storage_client,
)

TEST_SECRET = "test-secret"
PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n%%EOF\n"


def make_settings(**overrides) -> Settings:
    values = {"trust_email_header": True, "auth_secret": TEST_SECRET, "app_env": "test"}
    values.update(overrides)
    return Settings(**values)


def make_client(settings: Settings = None, overrides: dict = None) -> TestClient:
    app = create_app()
    resolved = settings or make_settings()
    app.dependency_overrides[get_settings] = lambda: resolved
    for dependency, factory in (overrides or {}).items():
        app.dependency_overrides[dependency] = factory
    return TestClient(app)


def reset_backends() -> None:
    get_db_client().reset()
    get_cache_backend().reset()
    get_storage_client().reset()
    get_academic_config().clear_cache()
    get_secure_url_limiter().reset()


def as_user(email: str) -> dict:
    return {"X-User-Email": email}


@dataclass
class Seed:
    cse: dict
    ece: dict
    year_2024: dict
    year_2023: dict
    sem_2024_1: dict
    sem_2024_2: dict
    sem_2023_1: dict
    sem_2023_2: dict


def seed_academics(db) -> Seed:
    """Two branches and batch years 2024 and 2023 with both semesters each."""
    cse = db.insert("branches", {"name": "Computer Science", "code": "CSE"})
    ece = db.insert("branches", {"name": "Electronics", "code": "ECE"})
    year_2024 = db.insert("years", {"batch_year": 2024, "display_name": "2024-28"})
    year_2023 = db.insert("years", {"batch_year": 2023, "display_name": "2023-27"})
    semesters = {}
    for year in (year_2024, year_2023):
        for number in (1, 2):
            semesters[(year["batch_year"], number)] = db.insert(
                "semesters", {"year_id": year["id"], "semester_number": number}
            )
    return Seed(
        cse=cse,
        ece=ece,
        year_2024=year_2024,
        year_2023=year_2023,
        sem_2024_1=semesters[(2024, 1)],
        sem_2024_2=semesters[(2024, 2)],
        sem_2023_1=semesters[(2023, 1)],
        sem_2023_2=semesters[(2023, 2)],
    )


def add_profile(db, seed: Seed, email: str, *, role: str = "student", roll: str = None, branch=None, year=None, semester=None) -> dict:
    branch = branch or seed.cse
    year = year or seed.year_2024
    semester = semester or seed.sem_2024_1
    return db.insert(
        "profiles",
        {
            "email": email,
            "name": email.split("@")[0].title(),
            "roll_number": roll or email.split("@")[0].upper(),
            "branch_id": branch["id"],
            "year_id": year["id"],
            "semester_id": semester["id"],
            "role": role,
        },
    )


def add_admin(db, email: str, role: str = "admin") -> dict:
    return db.insert("admins", {"email": email, "role": role})


def add_representative(db, seed: Seed, email: str, *, branch=None, year=None) -> dict:
    profile = add_profile(db, seed, email, role="representative")
    db.insert(
        "representatives",
        {
            "user_id": profile["id"],
            "branch_id": (branch or seed.cse)["id"],
            "year_id": (year or seed.year_2024)["id"],
            "active": True,
        },
    )
    return profile
