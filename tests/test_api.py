import pytest
from fastapi.testclient import TestClient

from catalog import Book, Member
from catalog.api import create_app
from catalog.config import get_settings


@pytest.fixture
def client(lib):
    with TestClient(create_app(lib)) as test_client:
        yield test_client


@pytest.fixture
def headers():
    return {"X-API-Key": get_settings().api_key}


def test_health(client, lib):
    lib.books.create(Book("Solaris", "Stanislaw Lem"))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "total_books": 1}


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_add_book_with_valid_api_key(client, headers):
    payload = {"title": "Solaris", "author": "Stanislaw Lem", "isbn": "9780156027601", "total_copies": 2}
    response = client.post("/books", headers=headers, json=payload)
    assert response.status_code == 201
    body = response.json()
    assert body["isbn"] == "9780156027601"
    assert body["available_copies"] == 2


def test_add_book_with_invalid_api_key(client):
    payload = {"title": "Solaris", "author": "Stanislaw Lem"}
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json=payload)
    assert response.status_code == 403
    response = client.post("/books", json=payload)
    assert response.status_code == 403


def test_validation_and_conflict_errors(client, headers):
    response = client.post("/books", headers=headers, json={"title": " ", "author": "Lem"})
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"

    payload = {"title": "Eden", "author": "Stanislaw Lem", "isbn": "111"}
    assert client.post("/books", headers=headers, json=payload).status_code == 201
    response = client.post("/books", headers=headers, json=payload)
    assert response.status_code == 409


def test_missing_book_is_404(client):
    response = client.get("/books/404")
    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_search_and_update_books(client, headers, lib):
    book_id = lib.books.create(Book("The Cyberiad", "Stanislaw Lem", category="Satire"))

    response = client.get("/books", params={"q": "satire", "by": "category"})
    assert [b["id"] for b in response.json()] == [book_id]

    response = client.get("/books", params={"q": "x", "by": "publisher"})
    assert response.status_code == 422

    payload = {"title": "The Cyberiad", "author": "Stanislaw Lem", "total_copies": 4}
    response = client.put(f"/books/{book_id}", headers=headers, json=payload)
    assert response.status_code == 200
    assert response.json()["available_copies"] == 4


def test_member_routes(client, headers):
    response = client.post("/members", headers=headers, json={"name": "Kris Kelvin", "email": "kris@example.com"})
    assert response.status_code == 201
    member_id = response.json()["id"]

    response = client.post(f"/members/{member_id}/deactivate", headers=headers)
    assert response.json()["is_active"] is False

    response = client.get("/members", params={"active": True})
    assert response.json() == []

    response = client.get(f"/members/{member_id}/stats")
    assert response.json() == {"total_loans": 0, "current_loans": 0, "overdue_loans": 0}


def test_loan_lifecycle(client, headers, lib):
    book_id = lib.books.create(Book("Fiasco", "Stanislaw Lem"))
    member_id = lib.members.create(Member("Parvis", "parvis@example.com"))

    response = client.post("/loans", headers=headers, json={"book_id": book_id, "member_id": member_id})
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "open"
    assert loan["due_date"] == "2024-03-15 10:00:00"

    response = client.post(f"/loans/{loan['id']}/extend", headers=headers, json={"extend_days": 7})
    assert response.json()["renewal_count"] == 1

    response = client.get("/loans/current")
    assert [entry["id"] for entry in response.json()] == [loan["id"]]

    response = client.post("/loans/return", headers=headers, json={"book_id": book_id, "member_id": member_id})
    assert response.status_code == 200
    assert response.json()["status"] == "closed"

    response = client.post(f"/loans/{loan['id']}/return", headers=headers)
    assert response.status_code == 409
    assert response.json()["reason"] == "already_returned"


def test_policy_errors_carry_reason(client, headers, lib):
    book_id = lib.books.create(Book("His Master's Voice", "Stanislaw Lem"))
    member_id = lib.members.create(Member("Hogarth", "hogarth@example.com"))
    lib.members.deactivate(member_id)

    response = client.post("/loans", headers=headers, json={"book_id": book_id, "member_id": member_id})
    assert response.status_code == 409
    assert response.json()["reason"] == "member_inactive"
    assert response.json()["error"] == "PolicyError"


def test_overdue_and_stats(client, headers, lib, clock):
    book_id = lib.books.create(Book("Golem XIV", "Stanislaw Lem"))
    member_id = lib.members.create(Member("Creve", "creve@example.com"))
    lib.loans.borrow(book_id, member_id, loan_days=1)
    clock.advance(days=4)

    response = client.get("/loans/overdue")
    (entry,) = response.json()
    assert entry["book_title"] == "Golem XIV"
    assert entry["overdue_days"] == 3

    response = client.get("/loans/due", params={"day": "2024-03-02"})
    assert len(response.json()) == 1

    stats = client.get("/stats").json()
    assert stats["total_books"] == 1
    assert stats["overdue_loans"] == 1

    response = client.get("/stats/popular-loans")
    assert response.json() == [{"book_id": book_id, "loan_count": 1}]
