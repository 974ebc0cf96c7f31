from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from crm_backend.app.main import create_app
from crm_backend.app.models import CustomerCreateRequest
from crm_backend.app.persistence import CrmDatabase
from crm_backend.app.store import CrmStore

# (name, email, total_spent, visit_count)
SEED_CUSTOMERS = [
    ("Asha", "asha@example.com", 1500, 5),
    ("Ravi", "ravi@example.com", 200, 2),
    ("Meera", "meera@example.com", 2000, 1),
]


def sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.as_posix()}"


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", sqlite_url(tmp_path / "crm.sqlite3"))
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WORKER_ENABLED", "false")
    monkeypatch.delenv("RECEIPT_ENDPOINT_URL", raising=False)
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[CrmDatabase]:
    db = CrmDatabase(sqlite_url(tmp_path / "crm.sqlite3"))
    yield db
    db.dispose()


@pytest.fixture()
def store(database: CrmDatabase) -> CrmStore:
    return CrmStore(database)


@pytest.fixture()
def seeded_store(store: CrmStore) -> CrmStore:
    for name, email, spent, visits in SEED_CUSTOMERS:
        store.create_customer(
            CustomerCreateRequest(name=name, email=email, total_spent=spent, visit_count=visits)
        )
    return store


@pytest.fixture()
def customer_ids(client: TestClient) -> list[str]:
    ids = []
    for name, email, spent, visits in SEED_CUSTOMERS:
        response = client.post(
            "/customers",
            json={"name": name, "email": email, "total_spent": spent, "visit_count": visits},
        )
        assert response.status_code == 201
        ids.append(response.json()["customer"]["id"])
    return ids


@pytest.fixture()
def high_spend_rules() -> dict:
    # spend above 1000 with at most five visits: Asha and Meera
    return {
        "combinator": "AND",
        "children": [
            {"field": "total_spent", "operator": ">", "value": 1000},
            {"field": "visit_count", "operator": "<=", "value": 5},
        ],
    }
