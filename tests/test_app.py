import re

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from database import Base, build_engine, get_db
from main import app

CSRF_RE = re.compile(r'name="csrf_token" value="([^"]+)"')


@pytest.fixture()
def client():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        engine.dispose()


def _csrf(client: TestClient, path: str) -> str:
    response = client.get(path)
    match = CSRF_RE.search(response.text)
    assert match, f"no csrf token on {path}"
    return match.group(1)


def _sign_up(client: TestClient, email: str = "ada@example.com") -> None:
    response = client.post(
        "/signup",
        data={
            "csrf_token": _csrf(client, "/signup"),
            "email": email,
            "password": "secret123",
            "full_name": "Ada",
        },
    )
    assert response.status_code == 200
    assert response.url.path == "/"


def test_dashboard_requires_session(client: TestClient) -> None:
    response = client.get("/")

    assert response.url.path == "/login"
    assert "Welcome Back" in response.text


def test_api_requires_session(client: TestClient) -> None:
    assert client.get("/api/expenses").status_code == 401
    assert client.get("/api/summary").status_code == 401
    assert (
        client.post("/api/expenses", json={"category": "Food", "amount": 1}).status_code
        == 401
    )


def test_sign_up_then_sign_out_and_back_in(client: TestClient) -> None:
    _sign_up(client)
    dashboard = client.get("/")
    assert "ada@example.com" in dashboard.text

    response = client.post("/logout", data={"csrf_token": _csrf(client, "/")})
    assert response.url.path == "/login"
    assert client.get("/api/expenses").status_code == 401

    failed = client.post(
        "/login",
        data={
            "csrf_token": _csrf(client, "/login"),
            "email": "ada@example.com",
            "password": "wrong-one",
        },
    )
    assert failed.status_code == 400
    assert "Invalid login credentials" in failed.text

    response = client.post(
        "/login",
        data={
            "csrf_token": _csrf(client, "/login"),
            "email": "ada@example.com",
            "password": "secret123",
        },
    )
    assert response.url.path == "/"
    assert client.get("/api/expenses").json() == []


def test_sign_up_shows_validation_message(client: TestClient) -> None:
    response = client.post(
        "/signup",
        data={
            "csrf_token": _csrf(client, "/signup"),
            "email": "short@example.com",
            "password": "123",
            "full_name": "Short",
        },
    )

    assert response.status_code == 400
    assert "Password must be at least 6 characters long" in response.text


def test_form_rejects_missing_csrf_token(client: TestClient) -> None:
    _sign_up(client)

    response = client.post(
        "/expenses", data={"category": "Travel", "amount": "10", "csrf_token": "nope"}
    )

    assert response.status_code == 400
    assert client.get("/api/expenses").json() == []


def test_expense_forms_create_edit_and_delete(client: TestClient) -> None:
    _sign_up(client)
    token = _csrf(client, "/")

    response = client.post(
        "/expenses",
        data={
            "csrf_token": token,
            "category": "Food & Dining",
            "amount": "12,50",
            "comments": "Lunch",
        },
    )
    assert response.status_code == 200
    [expense] = client.get("/api/expenses").json()
    assert expense["amount"] == 12.5
    assert expense["comments"] == "Lunch"

    response = client.post(
        f"/expenses/{expense['id']}",
        data={
            "csrf_token": token,
            "category": "Travel",
            "amount": "40",
            "comments": "Train",
        },
    )
    assert response.status_code == 200
    [edited] = client.get("/api/expenses").json()
    assert (edited["category"], edited["amount"]) == ("Travel", 40.0)

    response = client.post(
        f"/expenses/{expense['id']}/delete", data={"csrf_token": token}
    )
    assert response.status_code == 200
    assert client.get("/api/expenses").json() == []

    response = client.post(
        f"/expenses/{expense['id']}/delete", data={"csrf_token": token}
    )
    assert response.status_code == 400
    assert "Expense not found" in response.text


def test_expense_form_shows_error_for_negative_amount(client: TestClient) -> None:
    _sign_up(client)

    response = client.post(
        "/expenses",
        data={
            "csrf_token": _csrf(client, "/"),
            "category": "Shopping",
            "amount": "-1",
        },
    )

    assert response.status_code == 400
    assert 'role="alert"' in response.text
    assert client.get("/api/expenses").json() == []


def test_api_crud_and_summary(client: TestClient) -> None:
    _sign_up(client)

    for category, amount in [("Food", 10.00), ("Food", 5.50), ("Travel", 20.00)]:
        response = client.post(
            "/api/expenses", json={"category": category, "amount": amount}
        )
        assert response.status_code == 201

    summary = client.get("/api/summary").json()
    assert [(row["category"], row["total"]) for row in summary] == [
        ("Travel", 20.0),
        ("Food", 15.5),
    ]

    stats = client.get("/api/stats").json()
    assert stats["count"] == 3
    assert stats["total"] == 35.5
    assert stats["top_category"] == "Travel"

    expenses = client.get("/api/expenses").json()
    travel = next(e for e in expenses if e["category"] == "Travel")
    response = client.patch(f"/api/expenses/{travel['id']}", json={"amount": 2})
    assert response.status_code == 200
    assert response.json()["amount"] == 2.0
    assert response.json()["category"] == "Travel"

    assert client.delete(f"/api/expenses/{travel['id']}").status_code == 204
    assert client.delete(f"/api/expenses/{travel['id']}").status_code == 404
    assert (
        client.patch(f"/api/expenses/{travel['id']}", json={"amount": 1}).status_code
        == 404
    )
    assert len(client.get("/api/expenses?limit=1").json()) == 1
    assert client.get("/api/expenses?limit=0").status_code == 400


def test_api_validates_input(client: TestClient) -> None:
    _sign_up(client)

    assert (
        client.post("/api/expenses", json={"category": "Food", "amount": -1}).status_code
        == 422
    )
    assert (
        client.post("/api/expenses", json={"category": "", "amount": 1}).status_code
        == 422
    )
    assert client.get("/api/expenses").json() == []


def test_users_only_see_their_own_expenses(client: TestClient) -> None:
    _sign_up(client, "first@example.com")
    created = client.post(
        "/api/expenses", json={"category": "Healthcare", "amount": 80}
    ).json()
    client.post("/logout", data={"csrf_token": _csrf(client, "/")})

    _sign_up(client, "second@example.com")

    assert client.get("/api/expenses").json() == []
    assert client.get("/api/summary").json() == []
    assert client.delete(f"/api/expenses/{created['id']}").status_code == 404


def test_export_csv(client: TestClient) -> None:
    _sign_up(client)
    client.post(
        "/api/expenses",
        json={"category": "Other", "amount": 3.2, "comments": "=HYPERLINK()"},
    )

    response = client.get("/expenses/export.csv")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.splitlines()
    assert lines[0] == "Date,Category,Amount,Comments"
    assert lines[1].endswith(",Other,3.20,\t=HYPERLINK()")


def test_analytics_tab_renders_chart(client: TestClient) -> None:
    _sign_up(client)
    client.post("/api/expenses", json={"category": "Food", "amount": 30})
    client.post("/api/expenses", json={"category": "Travel", "amount": 10})

    response = client.get("/?tab=analytics")

    assert "conic-gradient" in response.text
    assert "75.0%" in response.text
    assert "25.0%" in response.text
