from datetime import timedelta
from unittest.mock import patch

import pytest

from circulation.exceptions import (
    AlreadyReturnedError,
    BookNotFoundError,
    ForbiddenError,
    LoanNotFoundError,
    NoCopiesAvailable,
    NotOverdueError,
    SelfDeletionError,
    UserNotFoundError,
)
from circulation.schemas import BookCreate, BookUpdate, UserCreate
from circulation.service import memory_circulation
from circulation.status import CopyStatus, LoanStatus, UserRole


def available(service, book_id):
    return service.copy_counts(book_id).available


def test_borrow_until_exhausted_then_return(
    service, test_user, other_user, test_book, now
):
    first = service.borrow_book(test_user.id, test_book.id, now=now)
    second = service.borrow_book(other_user.id, test_book.id, now=now)

    assert {first.book_copy.copy_code, second.book_copy.copy_code} == {
        "CC-001",
        "CC-002",
    }
    assert available(service, test_book.id) == 0
    with pytest.raises(NoCopiesAvailable):
        service.borrow_book(test_user.id, test_book.id, now=now)

    service.return_book(first.id, now=now + timedelta(days=2))
    assert available(service, test_book.id) == 1

    third = service.borrow_book(test_user.id, test_book.id, now=now)
    assert third.copy_id == first.copy_id
    assert available(service, test_book.id) == 0


def test_borrow_returns_joined_view(service, test_user, test_book, now):
    loan = service.borrow_book(test_user.id, test_book.id, now=now)

    assert loan.status == LoanStatus.BORROWED
    assert loan.borrow_date == now
    assert loan.due_date == now + timedelta(days=14)
    assert loan.book.title == "Clean Code"
    assert loan.user.name == "Test User"
    assert loan.book_copy.status == CopyStatus.BORROWED


def test_borrow_with_explicit_due_date(service, test_user, test_book, now):
    loan = service.borrow_book(
        test_user.id, test_book.id, due_at=now + timedelta(days=3), now=now
    )
    assert loan.due_date == now + timedelta(days=3)


def test_default_loan_period_is_configurable(now):
    service = memory_circulation(default_loan_days=7)
    user = service.catalog.create_user(
        UserCreate(name="Reader", email="reader@example.com", password="pw")
    )
    book = service.create_book(BookCreate(title="Dune", author="Frank Herbert"))

    loan = service.borrow_book(user.id, book.id, now=now)
    assert loan.due_date == now + timedelta(days=7)


def test_borrow_unknown_user(service, test_book, now):
    with pytest.raises(UserNotFoundError):
        service.borrow_book("999999", test_book.id, now=now)
    assert available(service, test_book.id) == 2


def test_borrow_unknown_book(service, test_user, now):
    with pytest.raises(BookNotFoundError):
        service.borrow_book(test_user.id, "999999", now=now)


def test_failed_loan_write_releases_claimed_copy(service, test_user, test_book, now):
    with patch.object(
        service.loans, "open_loan", side_effect=RuntimeError("ledger unavailable")
    ):
        with pytest.raises(RuntimeError):
            service.borrow_book(test_user.id, test_book.id, now=now)

    assert available(service, test_book.id) == 2
    assert service.all_loans(now=now) == []


def test_second_return_leaves_copy_alone(
    service, test_user, other_user, test_book, now
):
    service.borrow_book(other_user.id, test_book.id, now=now)

    loan = service.borrow_book(test_user.id, test_book.id, now=now)
    service.return_book(loan.id, now=now)
    again = service.borrow_book(other_user.id, test_book.id, now=now)
    assert again.copy_id == loan.copy_id

    with pytest.raises(AlreadyReturnedError):
        service.return_book(loan.id, now=now)
    assert service.copies.get_copy(again.copy_id).status == CopyStatus.BORROWED
    assert available(service, test_book.id) == 0


def test_return_unknown_loan(service):
    with pytest.raises(LoanNotFoundError):
        service.return_book("999999")


def test_overdue_reminder(service, test_user, test_book, now):
    loan = service.borrow_book(
        test_user.id, test_book.id, due_at=now + timedelta(days=1), now=now
    )

    with pytest.raises(NotOverdueError):
        service.send_overdue_reminder(loan.id, now=now)

    later = now + timedelta(days=2)
    reminded = service.send_overdue_reminder(loan.id, now=later)
    assert reminded.status == LoanStatus.OVERDUE
    assert reminded.reminder_sent is True
    assert reminded.user.email == "test@example.com"

    # sending twice is allowed, the flag only ever goes one way
    assert service.send_overdue_reminder(loan.id, now=later).reminder_sent is True

    service.return_book(loan.id, now=later)
    [view] = service.loans_for_user(test_user.id, now=later)
    assert view.status == LoanStatus.RETURNED
    assert view.reminder_sent is True


def test_delete_book_cascades(service, test_user, test_book, now):
    loan = service.borrow_book(test_user.id, test_book.id, now=now)
    copy_ids = [c.id for c in service.copies.copies_for_book(test_book.id)]

    service.delete_book(test_book.id)

    with pytest.raises(BookNotFoundError):
        service.get_book(test_book.id)
    assert service.copies.copies_for_book(test_book.id) == []
    assert all(service.copies.get_copy(copy_id) is None for copy_id in copy_ids)
    assert service.loans.get_loan(loan.id) is None
    assert service.loans_for_user(test_user.id, now=now) == []


def test_delete_unknown_book(service):
    with pytest.raises(BookNotFoundError):
        service.delete_book("999999")


def test_delete_user_releases_open_loans(service, test_user, test_book, now):
    returned = service.borrow_book(test_user.id, test_book.id, now=now)
    service.return_book(returned.id, now=now)
    service.borrow_book(test_user.id, test_book.id, now=now)
    service.borrow_book(test_user.id, test_book.id, now=now)
    assert available(service, test_book.id) == 0

    service.delete_user(test_user.id, requester_role=UserRole.ADMIN)

    assert available(service, test_book.id) == 2
    assert service.loans_for_user(test_user.id, now=now) == []
    with pytest.raises(UserNotFoundError):
        service.get_user(test_user.id)


def test_delete_unknown_user(service):
    with pytest.raises(UserNotFoundError):
        service.delete_user("999999", requester_role=UserRole.ADMIN)


def test_cannot_delete_self(service, staff_user):
    with pytest.raises(SelfDeletionError):
        service.delete_user(
            staff_user.id, requester_role=UserRole.ADMIN, requester_id=staff_user.id
        )
    assert service.get_user(staff_user.id).id == staff_user.id


@pytest.mark.parametrize(
    "target_role, requester_role, allowed",
    [
        (UserRole.USER, UserRole.STAFF, True),
        (UserRole.USER, UserRole.ADMIN, True),
        (UserRole.STAFF, UserRole.STAFF, False),
        (UserRole.STAFF, UserRole.ADMIN, True),
        (UserRole.ADMIN, UserRole.STAFF, False),
        (UserRole.ADMIN, UserRole.ADMIN, True),
    ],
)
def test_delete_user_role_rules(service, target_role, requester_role, allowed):
    target = service.catalog.create_user(
        UserCreate(
            name="Target",
            email="target@example.com",
            password="secret",
            role=target_role,
        )
    )

    if allowed:
        service.delete_user(target.id, requester_role=requester_role)
        assert service.catalog.get_user(target.id) is None
    else:
        with pytest.raises(ForbiddenError):
            service.delete_user(target.id, requester_role=requester_role)
        assert service.catalog.get_user(target.id) is not None


def test_update_book_only_adds_copies(service, test_book):
    grown = service.update_book(
        test_book.id, BookUpdate(title="Clean Code 2nd Edition", number_of_copies=4)
    )
    assert grown.title == "Clean Code 2nd Edition"
    assert (grown.total_copies, grown.available_copies) == (4, 4)
    codes = [c.copy_code for c in service.copies.copies_for_book(test_book.id)]
    assert codes == ["CC-001", "CC-002", "CC2E-003", "CC2E-004"]

    shrunk = service.update_book(test_book.id, BookUpdate(number_of_copies=1))
    assert shrunk.total_copies == 4
    assert shrunk.author == "Robert C. Martin"


def test_update_unknown_book(service):
    with pytest.raises(BookNotFoundError):
        service.update_book("999999", BookUpdate(title="Nothing"))


def test_list_and_available_books(service, test_user, test_book, now):
    hidden = service.create_book(
        BookCreate(title="Old Manual", author="Anon", number_of_copies=1)
    )
    service.update_book(hidden.id, BookUpdate(is_active=False))
    empty = service.create_book(
        BookCreate(title="No Copies", author="Anon", number_of_copies=0)
    )

    assert {b.id for b in service.list_books()} == {test_book.id, hidden.id, empty.id}
    assert {b.id for b in service.list_books(active_only=True)} == {
        test_book.id,
        empty.id,
    }
    assert [b.id for b in service.available_books()] == [test_book.id]

    service.borrow_book(test_user.id, test_book.id, now=now)
    service.borrow_book(test_user.id, test_book.id, now=now)
    assert service.available_books() == []


def test_dashboard_aggregate(service, test_user, other_user, test_book, now):
    service.create_book(BookCreate(title="Dune", author="Frank Herbert"))
    retired = service.create_book(BookCreate(title="Retired", author="Anon"))
    service.update_book(retired.id, BookUpdate(is_active=False))

    overdue = service.borrow_book(
        test_user.id, test_book.id, due_at=now - timedelta(days=1), now=now
    )
    active = service.borrow_book(other_user.id, test_book.id, now=now)
    service.return_book(active.id, now=now)
    service.borrow_book(other_user.id, test_book.id, now=now + timedelta(hours=1))

    stats = service.dashboard_aggregate(now=now)

    assert stats.active_book_count == 2
    assert stats.user_count == 2
    assert stats.active_loan_count == 1
    assert stats.overdue_loan_count == 1
    assert len(stats.recent_loans) == 3
    assert stats.recent_loans[0].borrow_date == now + timedelta(hours=1)
    assert [loan.id for loan in stats.recent_loans[1:]] == [overdue.id, active.id]

    data = stats.model_dump(by_alias=True)
    assert set(data) == {
        "activeBooks",
        "totalUsers",
        "activeLoans",
        "overdueLoans",
        "recentLoans",
    }


def test_dashboard_limits_recent_loans(service, test_user, test_book, now):
    service.update_book(test_book.id, BookUpdate(number_of_copies=7))
    for hours in range(7):
        service.borrow_book(test_user.id, test_book.id, now=now + timedelta(hours=hours))

    stats = service.dashboard_aggregate(now=now + timedelta(hours=7))

    assert stats.active_loan_count == 7
    assert [loan.borrow_date for loan in stats.recent_loans] == [
        now + timedelta(hours=h) for h in (6, 5, 4, 3, 2)
    ]


def test_categories(service, test_book):
    for title, author in (("Dune", "Frank Herbert"), ("Emma", "Jane Austen")):
        service.create_book(BookCreate(title=title, author=author, category="Fiction"))
    service.create_book(BookCreate(title="Untitled", author="Anon"))
    retired = service.create_book(
        BookCreate(title="Old Atlas", author="Anon", category="Geography")
    )
    service.update_book(retired.id, BookUpdate(is_active=False))

    assert service.categories() == ["Fiction", "Software"]
