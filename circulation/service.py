import logging
import os
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from circulation.catalog import Catalog, SqlCatalog
from circulation.copy_pool import CopyPool, SqlCopyPool
from circulation.exceptions import (
    BookNotFoundError,
    ForbiddenError,
    LoanNotFoundError,
    SelfDeletionError,
    UserNotFoundError,
)
from circulation.loan_ledger import RECENT_LOANS_LIMIT, LoanLedger, SqlLoanLedger
from circulation.memory import (
    MemoryCatalog,
    MemoryCopyPool,
    MemoryLoanLedger,
    MemoryStore,
)
from circulation.schemas import (
    BookCreate,
    BookSchema,
    BookUpdate,
    BookWithAvailability,
    CopyCount,
    DashboardStats,
    LoanView,
    UserSchema,
)
from circulation.status import LoanStatus, UserRole, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOAN_DAYS = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))


class CirculationService:
    """Borrow, return and reminder workflows over a copy pool and a ledger.

    This is the only place that calls both the copy pool and the loan ledger.
    The two writes of a borrow or return are not one transaction: a borrow
    whose ledger write fails releases the copy it claimed.
    """

    def __init__(
        self,
        catalog: Catalog,
        copies: CopyPool,
        loans: LoanLedger,
        default_loan_days: int = DEFAULT_LOAN_DAYS,
    ):
        self.catalog = catalog
        self.copies = copies
        self.loans = loans
        self.default_loan_days = default_loan_days

    # ---- catalog
    def _with_availability(self, book: BookSchema) -> BookWithAvailability:
        counts = self.copies.total_and_available_counts(book.id)
        return BookWithAvailability(
            **book.model_dump(),
            total_copies=counts.total,
            available_copies=counts.available,
        )

    def create_book(self, payload: BookCreate) -> BookWithAvailability:
        book = self.catalog.create_book(payload)
        self.copies.add_copies(book.id, payload.number_of_copies, book.title)
        logger.info(f"Created book {book.id} with {payload.number_of_copies} copies")
        return self._with_availability(book)

    def update_book(self, book_id: str, payload: BookUpdate) -> BookWithAvailability:
        book = self.catalog.update_book(book_id, payload)
        if book is None:
            raise BookNotFoundError(book_id)
        if payload.number_of_copies is not None:
            # copies are only ever added, never removed
            total = self.copies.total_and_available_counts(book_id).total
            if payload.number_of_copies > total:
                self.copies.add_copies(
                    book_id, payload.number_of_copies - total, book.title
                )
        return self._with_availability(book)

    def get_book(self, book_id: str) -> BookWithAvailability:
        book = self.catalog.get_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        return self._with_availability(book)

    def list_books(self, active_only: bool = False) -> List[BookWithAvailability]:
        return [
            self._with_availability(book)
            for book in self.catalog.list_books(active_only=active_only)
        ]

    def available_books(self) -> List[BookWithAvailability]:
        return [
            book
            for book in self.list_books(active_only=True)
            if book.available_copies > 0
        ]

    def categories(self) -> List[str]:
        return self.catalog.list_categories()

    def copy_counts(self, book_id: str) -> CopyCount:
        return self.copies.total_and_available_counts(book_id)

    def delete_book(self, book_id: str) -> None:
        """Delete a book with all its copies and every loan referencing it.

        Open loans are deleted too; there is no active-loan guard.
        """
        if self.catalog.get_book(book_id) is None:
            raise BookNotFoundError(book_id)
        deleted_loans = self.loans.delete_loans_for_book(book_id)
        deleted_copies = self.copies.delete_copies_for_book(book_id)
        self.catalog.delete_book(book_id)
        logger.info(
            f"Deleted book {book_id} with {deleted_copies} copies and {deleted_loans} loans"
        )

    # ---- users
    def get_user(self, user_id: str) -> UserSchema:
        user = self.catalog.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def delete_user(
        self,
        user_id: str,
        requester_role: UserRole,
        requester_id: Optional[str] = None,
    ) -> None:
        """Delete a user after releasing the copies of their open loans."""
        target = self.get_user(user_id)
        if requester_id is not None and target.id == requester_id:
            raise SelfDeletionError(user_id)
        if target.role == UserRole.ADMIN and requester_role != UserRole.ADMIN:
            raise ForbiddenError("Only administrators can remove another admin")
        if target.role == UserRole.STAFF and requester_role != UserRole.ADMIN:
            raise ForbiddenError("Only administrators can remove staff members")

        open_loans = self.loans.open_loans_for_user(user_id)
        for loan in open_loans:
            self.copies.release_copy(loan.copy_id)
        self.loans.delete_loans_for_user(user_id)
        self.catalog.delete_user(user_id)
        logger.info(f"Deleted user {user_id}, released {len(open_loans)} copies")

    # ---- circulation
    def borrow_book(
        self,
        user_id: str,
        book_id: str,
        due_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> LoanView:
        now = now or utcnow()
        due_at = due_at or now + timedelta(days=self.default_loan_days)
        self.get_user(user_id)
        if self.catalog.get_book(book_id) is None:
            raise BookNotFoundError(book_id)

        copy = self.copies.claim_available_copy(book_id)
        try:
            loan = self.loans.open_loan(user_id, book_id, copy.id, due_at, now=now)
        except Exception:
            logger.warning(
                f"Opening loan for copy {copy.id} failed, releasing the claimed copy"
            )
            self.copies.release_copy(copy.id)
            raise

        logger.info(f"User {user_id} borrowed copy {copy.copy_code} of book {book_id}")
        return self._loan_view(loan.id, now)

    def return_book(self, loan_id: str, now: Optional[datetime] = None) -> None:
        loan = self.loans.close_loan(loan_id, now=now)
        self.copies.release_copy(loan.copy_id)
        logger.info(f"Loan {loan_id} returned, copy {loan.copy_id} released")

    def send_overdue_reminder(
        self, loan_id: str, now: Optional[datetime] = None
    ) -> LoanView:
        loan = self.loans.mark_reminder_sent(loan_id, now=now)
        logger.info(f"Reminder marked for overdue loan {loan_id}")
        return self._loan_view(loan.id, now)

    def _loan_view(self, loan_id: str, now: Optional[datetime]) -> LoanView:
        view = self.loans.get_loan_view(loan_id, now=now)
        if view is None:
            raise LoanNotFoundError(loan_id)
        return view

    # ---- read views
    def loans_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[LoanView]:
        return self.loans.loans_for_user(user_id, now=now)

    def all_loans(self, now: Optional[datetime] = None) -> List[LoanView]:
        return self.loans.all_loans(now=now)

    def dashboard_aggregate(self, now: Optional[datetime] = None) -> DashboardStats:
        now = now or utcnow()
        active = overdue = 0
        for loan in self.loans.all_loans(now=now):
            if loan.status == LoanStatus.OVERDUE:
                overdue += 1
            elif loan.status == LoanStatus.BORROWED:
                active += 1
        return DashboardStats(
            active_book_count=self.catalog.count_active_books(),
            user_count=self.catalog.count_users(),
            active_loan_count=active,
            overdue_loan_count=overdue,
            recent_loans=self.loans.recent_loans(RECENT_LOANS_LIMIT, now=now),
        )


def sql_circulation(db: Session, **kwargs) -> CirculationService:
    return CirculationService(
        SqlCatalog(db), SqlCopyPool(db), SqlLoanLedger(db), **kwargs
    )


def memory_circulation(store: Optional[MemoryStore] = None, **kwargs) -> CirculationService:
    store = store or MemoryStore()
    return CirculationService(
        MemoryCatalog(store), MemoryCopyPool(store), MemoryLoanLedger(store), **kwargs
    )
