from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from catalog.config import configure_logging, get_settings
from catalog.errors import (
    CatalogError,
    ConflictError,
    NotFoundError,
    PolicyError,
    StorageError,
    TransientStorageError,
    ValidationError,
)
from catalog.library import Library
from catalog.models import Book, Member

_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PolicyError, 409),
    (TransientStorageError, 503),
    (StorageError, 500),
]


# --- Request models ---
class BookIn(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None
    publication_year: Optional[int] = None
    total_copies: int = Field(1, description="Total number of copies owned")
    available_copies: Optional[int] = Field(None, description="Defaults to total_copies")


class MemberIn(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True


class BorrowIn(BaseModel):
    book_id: int
    member_id: int
    loan_days: Optional[int] = None


class ReturnByIdsIn(BaseModel):
    book_id: int
    member_id: int


class ExtendIn(BaseModel):
    extend_days: Optional[int] = None


def create_app(library: Optional[Library] = None) -> FastAPI:
    """Build the API around a Library; without one, it is created from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings.log_level)
        if getattr(app.state, "library", None) is None:
            app.state.library = Library(settings=settings)
        yield

    app = FastAPI(title="Library Catalog API", lifespan=lifespan)
    app.state.library = library

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 500)
        body = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, PolicyError):
            body["reason"] = exc.reason.value
        return JSONResponse(status_code=status, content=body)

    # --- Security ---
    api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

    def get_api_key(api_key: Optional[str] = Security(api_key_header)):
        """Dependency that checks the API key on mutating routes."""
        if api_key == get_settings().api_key:
            return api_key
        raise HTTPException(status_code=403, detail="Could not validate credentials")

    def get_library(request: Request) -> Library:
        return request.app.state.library

    protected = [Depends(get_api_key)]

    @app.get("/health")
    def health(lib: Library = Depends(get_library)):
        return {"status": "healthy", "total_books": lib.books.count()}

    # --- Books ---
    @app.get("/books")
    def list_books(
        q: Optional[str] = Query(None, description="Search term"),
        by: str = Query("title", pattern="^(title|author|category)$"),
        limit: int = Query(0, ge=0),
        offset: int = Query(0, ge=0),
        lib: Library = Depends(get_library),
    ):
        if q:
            search = getattr(lib.books, f"search_by_{by}")
            return [b.to_dict() for b in search(q)]
        return [b.to_dict() for b in lib.books.list_all(limit=limit, offset=offset)]

    @app.get("/books/available")
    def available_books(lib: Library = Depends(get_library)):
        return [b.to_dict() for b in lib.books.list_available()]

    @app.get("/books/popular")
    def popular_books(limit: int = Query(10, gt=0), lib: Library = Depends(get_library)):
        return [b.to_dict() for b in lib.books.popular(limit)]

    @app.get("/books/{book_id}")
    def get_book(book_id: int, lib: Library = Depends(get_library)):
        return lib.books.get(book_id).to_dict()

    @app.post("/books", status_code=201, dependencies=protected)
    def create_book(payload: BookIn, lib: Library = Depends(get_library)):
        data = payload.model_dump()
        if data["available_copies"] is None:
            data["available_copies"] = data["total_copies"]
        book_id = lib.books.create(Book(**data))
        return lib.books.get(book_id).to_dict()

    @app.put("/books/{book_id}", dependencies=protected)
    def update_book(book_id: int, payload: BookIn, lib: Library = Depends(get_library)):
        data = payload.model_dump()
        if data["available_copies"] is None:
            current = lib.books.get(book_id)
            data["available_copies"] = current.available_copies + data["total_copies"] - current.total_copies
        return lib.books.update(Book(id=book_id, **data)).to_dict()

    @app.delete("/books/{book_id}", dependencies=protected)
    def delete_book(book_id: int, lib: Library = Depends(get_library)):
        lib.books.delete(book_id)
        return {"deleted": book_id}

    # --- Members ---
    @app.get("/members")
    def list_members(
        q: Optional[str] = Query(None),
        by: str = Query("name", pattern="^(name|phone)$"),
        active: bool = Query(False),
        limit: int = Query(0, ge=0),
        offset: int = Query(0, ge=0),
        lib: Library = Depends(get_library),
    ):
        if q:
            search = getattr(lib.members, f"search_by_{by}")
            return [m.to_dict() for m in search(q)]
        if active:
            return [m.to_dict() for m in lib.members.list_active()]
        return [m.to_dict() for m in lib.members.list_all(limit=limit, offset=offset)]

    @app.get("/members/{member_id}")
    def get_member(member_id: int, lib: Library = Depends(get_library)):
        return lib.members.get(member_id).to_dict()

    @app.get("/members/{member_id}/stats")
    def member_stats(member_id: int, lib: Library = Depends(get_library)):
        return lib.members.loan_stats(member_id)

    @app.post("/members", status_code=201, dependencies=protected)
    def create_member(payload: MemberIn, lib: Library = Depends(get_library)):
        member_id = lib.members.create(Member(**payload.model_dump()))
        return lib.members.get(member_id).to_dict()

    @app.put("/members/{member_id}", dependencies=protected)
    def update_member(member_id: int, payload: MemberIn, lib: Library = Depends(get_library)):
        return lib.members.update(Member(id=member_id, **payload.model_dump())).to_dict()

    @app.delete("/members/{member_id}", dependencies=protected)
    def delete_member(member_id: int, lib: Library = Depends(get_library)):
        lib.members.delete(member_id)
        return {"deleted": member_id}

    @app.post("/members/{member_id}/activate", dependencies=protected)
    def activate_member(member_id: int, lib: Library = Depends(get_library)):
        return lib.members.activate(member_id).to_dict()

    @app.post("/members/{member_id}/deactivate", dependencies=protected)
    def deactivate_member(member_id: int, lib: Library = Depends(get_library)):
        return lib.members.deactivate(member_id).to_dict()

    # --- Loans ---
    @app.post("/loans", status_code=201, dependencies=protected)
    def borrow(payload: BorrowIn, lib: Library = Depends(get_library)):
        loan_id = lib.loans.borrow(payload.book_id, payload.member_id, payload.loan_days)
        return lib.loans.get(loan_id).to_dict(lib.clock)

    @app.post("/loans/return", dependencies=protected)
    def return_by_ids(payload: ReturnByIdsIn, lib: Library = Depends(get_library)):
        return lib.loans.return_book(payload.book_id, payload.member_id).to_dict(lib.clock)

    @app.get("/loans/current")
    def current_loans(lib: Library = Depends(get_library)):
        return [loan.to_dict(lib.clock) for loan in lib.reports.current_loans()]

    @app.get("/loans/overdue")
    def overdue_loans(lib: Library = Depends(get_library)):
        return [loan.to_dict(lib.clock) for loan in lib.reports.overdue_report()]

    @app.get("/loans/due")
    def loans_due(day: date, lib: Library = Depends(get_library)):
        return [loan.to_dict(lib.clock) for loan in lib.reports.loans_due_on(day)]

    @app.get("/loans/{loan_id}")
    def get_loan(loan_id: int, lib: Library = Depends(get_library)):
        return lib.loans.get(loan_id).to_dict(lib.clock)

    @app.post("/loans/{loan_id}/return", dependencies=protected)
    def return_loan(loan_id: int, lib: Library = Depends(get_library)):
        return lib.loans.return_loan(loan_id).to_dict(lib.clock)

    @app.post("/loans/{loan_id}/extend", dependencies=protected)
    def extend_loan(loan_id: int, payload: Optional[ExtendIn] = None, lib: Library = Depends(get_library)):
        days = payload.extend_days if payload else None
        return lib.loans.extend(loan_id, days).to_dict(lib.clock)

    # --- Reports ---
    @app.get("/stats")
    def stats(lib: Library = Depends(get_library)):
        result = lib.reports.catalog_statistics()
        result.update(lib.reports.loan_statistics())
        return result

    @app.get("/stats/popular-loans")
    def popular_by_loans(limit: int = Query(10, gt=0), lib: Library = Depends(get_library)) -> List[dict]:
        return [{"book_id": book_id, "loan_count": count} for book_id, count in lib.reports.popular_books_by_loans(limit)]

    return app


app = create_app()
