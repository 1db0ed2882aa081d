import os
import subprocess
import sys
from datetime import datetime
from functools import wraps
from typing import Optional

import typer
from rich.prompt import Confirm

from catalog.config import configure_logging, get_settings
from catalog.errors import CatalogError
from catalog.library import Library
from catalog.models import Book, Member
from catalog.ui_helpers import (
    BOOK_FIELDS,
    LOAN_FIELDS,
    MEMBER_FIELDS,
    print_record,
    print_records,
    print_stats_result,
    set_output_mode,
)

app = typer.Typer(help="Library catalog: books, members and loans.")
book_app = typer.Typer(help="Manage the book catalog.")
member_app = typer.Typer(help="Manage library members.")
loan_app = typer.Typer(help="Borrow, return and renew books.")
app.add_typer(book_app, name="book")
app.add_typer(member_app, name="member")
app.add_typer(loan_app, name="loan")


def handle_errors(func):
    """Turn catalog errors into a one-line message and exit code 1."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CatalogError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)

    return wrapper


def _library(ctx: typer.Context) -> Library:
    return ctx.obj


def _loan_dicts(lib: Library, loans) -> list:
    return [loan.to_dict(lib.clock) for loan in loans]


@app.callback()
def _global_options(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Database file (default: LIBRARY_DB_FILE or library.db)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich"),
):
    """Global options for the CLI."""
    settings = get_settings()
    configure_logging(settings.log_level)
    if output:
        set_output_mode(output)
    try:
        ctx.obj = Library(db_file=db, settings=settings)
    except CatalogError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)


# ------------------------- Books ------------------------- #
@book_app.command("add")
@handle_errors
def book_add(
    ctx: typer.Context,
    title: str,
    author: str,
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    category: Optional[str] = typer.Option(None, "--category"),
    year: Optional[int] = typer.Option(None, "--year"),
    copies: int = typer.Option(1, "--copies", help="Number of physical copies"),
):
    """Add a book to the catalog."""
    book = Book(title=title, author=author, isbn=isbn, publisher=publisher, category=category,
                publication_year=year, total_copies=copies, available_copies=copies)
    book_id = _library(ctx).books.create(book)
    print(f"Added book {book_id}: {book.title} by {book.author}")


@book_app.command("show")
@handle_errors
def book_show(ctx: typer.Context, book_id: int):
    """Show one book."""
    print_record(_library(ctx).books.get(book_id).to_dict(), "Book")


@book_app.command("list")
@handle_errors
def book_list(
    ctx: typer.Context,
    limit: int = typer.Option(0, "--limit", "-l", help="Maximum rows (0 = all)"),
    offset: int = typer.Option(0, "--offset"),
    available: bool = typer.Option(False, "--available", help="Only books with a copy on the shelf"),
):
    """List books."""
    books = _library(ctx).books
    rows = books.list_available() if available else books.list_all(limit=limit, offset=offset)
    print_records([b.to_dict() for b in rows], BOOK_FIELDS, "Books", "No books in library.")


@book_app.command("search")
@handle_errors
def book_search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Search term"),
    by: str = typer.Option("title", "--by", help="title | author | category"),
):
    """Search books by title, author or category."""
    books = _library(ctx).books
    searches = {
        "title": books.search_by_title,
        "author": books.search_by_author,
        "category": books.search_by_category,
    }
    if by not in searches:
        print(f"Error: unknown search field '{by}'")
        raise typer.Exit(code=1)
    rows = searches[by](query)
    print_records([b.to_dict() for b in rows], BOOK_FIELDS, "Books", f"No books matching '{query}'.")


@book_app.command("update")
@handle_errors
def book_update(
    ctx: typer.Context,
    book_id: int,
    title: Optional[str] = typer.Option(None, "--title"),
    author: Optional[str] = typer.Option(None, "--author"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    category: Optional[str] = typer.Option(None, "--category"),
    year: Optional[int] = typer.Option(None, "--year"),
    total: Optional[int] = typer.Option(None, "--total"),
    available: Optional[int] = typer.Option(None, "--available"),
):
    """Change fields of a book; options left out keep their current value."""
    books = _library(ctx).books
    book = books.get(book_id)
    if total is not None and available is None:
        # New copies go on the shelf; removed ones come off it
        available = book.available_copies + total - book.total_copies
    changes = {"title": title, "author": author, "isbn": isbn, "publisher": publisher,
               "category": category, "publication_year": year, "total_copies": total,
               "available_copies": available}
    for name, value in changes.items():
        if value is not None:
            setattr(book, name, value)
    updated = books.update(book)
    print(f"Updated book {updated.id}: {updated.title}")


@book_app.command("delete")
@handle_errors
def book_delete(ctx: typer.Context, book_id: int):
    """Delete a book that has no open loans."""
    _library(ctx).books.delete(book_id)
    print(f"Book {book_id} has been removed.")


@book_app.command("popular")
@handle_errors
def book_popular(ctx: typer.Context, limit: int = typer.Option(10, "--limit", "-l")):
    """Most borrowed books."""
    rows = _library(ctx).books.popular(limit)
    print_records([b.to_dict() for b in rows], BOOK_FIELDS, "Popular books", "No books in library.")


# ------------------------- Members ------------------------- #
@member_app.command("add")
@handle_errors
def member_add(
    ctx: typer.Context,
    name: str,
    email: str,
    phone: Optional[str] = typer.Option(None, "--phone"),
    address: Optional[str] = typer.Option(None, "--address"),
):
    """Register a member."""
    member_id = _library(ctx).members.create(Member(name=name, email=email, phone=phone, address=address))
    print(f"Registered member {member_id}: {name} <{email}>")


@member_app.command("show")
@handle_errors
def member_show(ctx: typer.Context, member_id: int):
    """Show one member."""
    print_record(_library(ctx).members.get(member_id).to_dict(), "Member")


@member_app.command("list")
@handle_errors
def member_list(
    ctx: typer.Context,
    limit: int = typer.Option(0, "--limit", "-l"),
    offset: int = typer.Option(0, "--offset"),
    active: bool = typer.Option(False, "--active", help="Only active members"),
):
    """List members."""
    members = _library(ctx).members
    rows = members.list_active() if active else members.list_all(limit=limit, offset=offset)
    print_records([m.to_dict() for m in rows], MEMBER_FIELDS, "Members", "No members registered.")


@member_app.command("search")
@handle_errors
def member_search(
    ctx: typer.Context,
    query: str,
    by: str = typer.Option("name", "--by", help="name | phone"),
):
    """Search members by name or phone."""
    members = _library(ctx).members
    if by == "phone":
        rows = members.search_by_phone(query)
    elif by == "name":
        rows = members.search_by_name(query)
    else:
        print(f"Error: unknown search field '{by}'")
        raise typer.Exit(code=1)
    print_records([m.to_dict() for m in rows], MEMBER_FIELDS, "Members", f"No members matching '{query}'.")


@member_app.command("update")
@handle_errors
def member_update(
    ctx: typer.Context,
    member_id: int,
    name: Optional[str] = typer.Option(None, "--name"),
    email: Optional[str] = typer.Option(None, "--email"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    address: Optional[str] = typer.Option(None, "--address"),
):
    """Change fields of a member; options left out keep their current value."""
    members = _library(ctx).members
    member = members.get(member_id)
    for field, value in {"name": name, "email": email, "phone": phone, "address": address}.items():
        if value is not None:
            setattr(member, field, value)
    updated = members.update(member)
    print(f"Updated member {updated.id}: {updated.name}")


@member_app.command("delete")
@handle_errors
def member_delete(ctx: typer.Context, member_id: int):
    """Delete a member without open loans."""
    _library(ctx).members.delete(member_id)
    print(f"Member {member_id} has been removed.")


@member_app.command("activate")
@handle_errors
def member_activate(ctx: typer.Context, member_id: int):
    member = _library(ctx).members.activate(member_id)
    print(f"Member {member.id} is active.")


@member_app.command("deactivate")
@handle_errors
def member_deactivate(ctx: typer.Context, member_id: int):
    member = _library(ctx).members.deactivate(member_id)
    print(f"Member {member.id} is inactive.")


@member_app.command("stats")
@handle_errors
def member_stats(ctx: typer.Context, member_id: int):
    """Loan counts for one member."""
    print_stats_result(_library(ctx).members.loan_stats(member_id), f"Member {member_id} loans")


# ------------------------- Loans ------------------------- #
@loan_app.command("borrow")
@handle_errors
def loan_borrow(
    ctx: typer.Context,
    book_id: int,
    member_id: int,
    days: int = typer.Option(0, "--days", help="Loan period in days (0 = default)"),
):
    """Lend a book to a member."""
    lib = _library(ctx)
    loan = lib.loans.get(lib.loans.borrow(book_id, member_id, days))
    print(f"Loan {loan.id} created; due {loan.due_date:%Y-%m-%d}")


@loan_app.command("return")
@handle_errors
def loan_return(
    ctx: typer.Context,
    loan_id: Optional[int] = typer.Argument(None, help="Loan id"),
    book_id: Optional[int] = typer.Option(None, "--book"),
    member_id: Optional[int] = typer.Option(None, "--member"),
):
    """Return a loan by id, or by --book and --member."""
    lib = _library(ctx)
    if loan_id is not None:
        loan = lib.loans.return_loan(loan_id)
    elif book_id is not None and member_id is not None:
        loan = lib.loans.return_book(book_id, member_id)
    else:
        print("Error: give a loan id, or both --book and --member")
        raise typer.Exit(code=1)
    print(f"Loan {loan.id} returned; {loan.overdue_status(loan.return_date)}")


@loan_app.command("extend")
@handle_errors
def loan_extend(
    ctx: typer.Context,
    loan_id: int,
    days: Optional[int] = typer.Option(None, "--days", help="Days to add (default: loan period)"),
):
    """Renew an open loan."""
    loan = _library(ctx).loans.extend(loan_id, days)
    print(f"Loan {loan.id} renewed ({loan.renewal_count}x); due {loan.due_date:%Y-%m-%d}")


@loan_app.command("show")
@handle_errors
def loan_show(ctx: typer.Context, loan_id: int):
    lib = _library(ctx)
    print_record(lib.loans.get(loan_id).to_dict(lib.clock), "Loan")


@loan_app.command("current")
@handle_errors
def loan_current(ctx: typer.Context):
    """All open loans."""
    lib = _library(ctx)
    print_records(_loan_dicts(lib, lib.reports.current_loans()), LOAN_FIELDS, "Current loans", "No open loans.")


@loan_app.command("overdue")
@handle_errors
def loan_overdue(ctx: typer.Context):
    """Open loans past their due date."""
    lib = _library(ctx)
    fields = LOAN_FIELDS + [("book_title", "Title"), ("member_name", "Borrower"), ("overdue_days", "Days")]
    print_records(_loan_dicts(lib, lib.reports.overdue_report()), fields, "Overdue loans", "No overdue loans.")


@loan_app.command("due")
@handle_errors
def loan_due(ctx: typer.Context, day: datetime = typer.Argument(..., formats=["%Y-%m-%d"])):
    """Open loans due on a given day (YYYY-MM-DD)."""
    lib = _library(ctx)
    rows = lib.reports.loans_due_on(day.date())
    print_records(_loan_dicts(lib, rows), LOAN_FIELDS, f"Due {day:%Y-%m-%d}", "No loans due that day.")


@loan_app.command("history")
@handle_errors
def loan_history(
    ctx: typer.Context,
    member_id: Optional[int] = typer.Option(None, "--member"),
    book_id: Optional[int] = typer.Option(None, "--book"),
    open_only: bool = typer.Option(False, "--open", help="Skip returned loans"),
):
    """Loan history of a member or a book."""
    lib = _library(ctx)
    if member_id is not None:
        rows = lib.reports.member_history(member_id, include_returned=not open_only)
    elif book_id is not None:
        rows = lib.reports.book_history(book_id, include_returned=not open_only)
    else:
        print("Error: give --member or --book")
        raise typer.Exit(code=1)
    print_records(_loan_dicts(lib, rows), LOAN_FIELDS, "Loan history", "No loans found.")


# ------------------------- Maintenance ------------------------- #
@app.command("stats")
@handle_errors
def cli_stats(ctx: typer.Context):
    """Catalog and loan statistics."""
    lib = _library(ctx)
    stats = lib.reports.catalog_statistics()
    stats.update(lib.reports.loan_statistics())
    print_stats_result(stats)


@app.command("backup")
@handle_errors
def cli_backup(ctx: typer.Context, path: Optional[str] = typer.Argument(None, help="Backup file path")):
    """Write a consistent snapshot of the database."""
    written = _library(ctx).backup(path)
    print(f"Backup written to {written}")


@app.command("restore")
@handle_errors
def cli_restore(
    ctx: typer.Context,
    path: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Replace the database with a backup. Stop other users of the database first."""
    if not yes and not Confirm.ask(f"Overwrite {_library(ctx).db_file} with {path}?"):
        print("Restore cancelled.")
        return
    _library(ctx).restore(path)
    print(f"Database restored from {path}")


@app.command("serve")
def cli_serve(ctx: typer.Context):
    """Run the HTTP API with uvicorn."""
    settings = get_settings()
    env = dict(os.environ, LIBRARY_DB_FILE=_library(ctx).db_file)
    print(f"Starting API on http://{settings.api_host}:{settings.api_port}")
    try:
        subprocess.run(
            [sys.executable, "-m", "uvicorn", "catalog.api:app",
             "--host", settings.api_host, "--port", str(settings.api_port)],
            env=env,
        )
    except FileNotFoundError:
        print("Error: uvicorn is not installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
