import pytest

from catalog import Book, ConflictError, Member, NotFoundError, ValidationError


def add_member(lib, name="Ada Lovelace", email="ada@example.com", **kwargs):
    return lib.members.create(Member(name=name, email=email, **kwargs))


def test_register_and_get(lib):
    member_id = add_member(lib, phone="(555) 123-4567", address="12 St James's Square")

    member = lib.members.get(member_id)
    assert member.name == "Ada Lovelace"
    assert member.phone == "(555) 123-4567"
    assert member.is_active is True
    assert member.registration_date == lib.clock()
    assert lib.members.get_by_email(" ada@example.com ").id == member_id


def test_duplicate_email_rejected(lib):
    add_member(lib)
    with pytest.raises(ConflictError):
        add_member(lib, name="Someone Else")
    assert len(lib.members.list_all()) == 1


@pytest.mark.parametrize("email", ["", "no-at-sign.com", "@example.com", "ada@", "ada@localhost"])
def test_invalid_email_rejected(lib, email):
    with pytest.raises(ValidationError):
        add_member(lib, email=email)


@pytest.mark.parametrize("phone", ["555-CALL-NOW", "+1 555 0100", "1" * 20])
def test_invalid_phone_rejected(lib, phone):
    with pytest.raises(ValidationError):
        add_member(lib, phone=phone)


def test_name_required(lib):
    with pytest.raises(ValidationError):
        add_member(lib, name="  ")


def test_get_missing_member(lib):
    with pytest.raises(NotFoundError):
        lib.members.get(42)
    with pytest.raises(NotFoundError):
        lib.members.get_by_email("nobody@example.com")


def test_update_member(lib, clock):
    member_id = add_member(lib)
    other_id = add_member(lib, name="Charles Babbage", email="charles@example.com")
    clock.advance(minutes=5)

    member = lib.members.get(member_id)
    member.name = "Augusta Ada King"
    member.phone = "555 0100"
    updated = lib.members.update(member)
    assert updated.name == "Augusta Ada King"
    assert updated.updated_at > updated.created_at

    other = lib.members.get(other_id)
    other.email = "ada@example.com"
    with pytest.raises(ConflictError):
        lib.members.update(other)


def test_activate_and_deactivate(lib):
    member_id = add_member(lib)

    assert lib.members.deactivate(member_id).is_active is False
    assert lib.members.list_active() == []
    assert lib.members.activate(member_id).is_active is True
    assert [m.id for m in lib.members.list_active()] == [member_id]

    with pytest.raises(NotFoundError):
        lib.members.deactivate(999)


def test_search_by_name_and_phone(lib):
    add_member(lib, name="Grace Hopper", email="grace@example.com", phone="555 0101")
    add_member(lib, name="Alan Turing", email="alan@example.com", phone="555 0202")

    assert [m.name for m in lib.members.search_by_name("GRACE")] == ["Grace Hopper"]
    assert [m.name for m in lib.members.search_by_phone("0202")] == ["Alan Turing"]
    assert lib.members.search_by_name("%") == []


def test_delete_member_blocked_by_open_loans(lib):
    member_id = add_member(lib)
    book_id = lib.books.create(Book("Notes", "L. F. Menabrea"))
    lib.loans.borrow(book_id, member_id)

    with pytest.raises(ConflictError):
        lib.members.delete(member_id)

    lib.loans.return_book(book_id, member_id)
    lib.members.delete(member_id)
    with pytest.raises(NotFoundError):
        lib.members.get(member_id)
    # Loan history goes with the member
    assert lib.reports.book_history(book_id) == []


def test_loan_stats(lib, clock):
    member_id = add_member(lib)
    first = lib.books.create(Book("First", "A"))
    second = lib.books.create(Book("Second", "B"))

    lib.loans.borrow(first, member_id, loan_days=1)
    lib.loans.borrow(second, member_id, loan_days=30)
    clock.advance(days=2)

    assert lib.members.loan_stats(member_id) == {"total_loans": 2, "current_loans": 2, "overdue_loans": 1}

    lib.loans.return_book(first, member_id)
    assert lib.members.loan_stats(member_id) == {"total_loans": 2, "current_loans": 1, "overdue_loans": 0}

    with pytest.raises(NotFoundError):
        lib.members.loan_stats(999)
