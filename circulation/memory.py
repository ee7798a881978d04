"""In-memory implementations of the circulation contracts.

All state lives in a :class:`MemoryStore` arena owned by the caller, so two
stores never share records. Intended for demos and tests.
"""

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from circulation.catalog import Catalog, book_fields, hash_password
from circulation.copy_pool import CopyPool, copy_code
from circulation.exceptions import (
    AlreadyReturnedError,
    LoanNotFoundError,
    NoCopiesAvailable,
    NotOverdueError,
)
from circulation.loan_ledger import RECENT_LOANS_LIMIT, LoanLedger
from circulation.schemas import (
    BookCreate,
    BookSchema,
    BookUpdate,
    CopyCount,
    CopySchema,
    LoanSchema,
    LoanView,
    UserCreate,
    UserSchema,
    build_loan_view,
)
from circulation.status import CopyStatus, LoanStatus, as_utc, derive_status, utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class MemoryStore:
    """Indexed collections for books, copies, loans and users.

    ``lock`` guards structural changes (inserts and deletes). Copy status
    changes only take that copy's own lock from ``copy_locks``.
    """

    def __init__(self) -> None:
        self.books: Dict[str, BookSchema] = {}
        self.copies: Dict[str, CopySchema] = {}
        self.copy_locks: Dict[str, threading.Lock] = {}
        self.loans: Dict[str, LoanSchema] = {}
        self.loan_locks: Dict[str, threading.Lock] = {}
        self.users: Dict[str, UserSchema] = {}
        self.password_hashes: Dict[str, str] = {}
        self.lock = threading.RLock()


class MemoryCatalog(Catalog):
    def __init__(self, store: MemoryStore):
        self.store = store

    def create_book(self, book: BookCreate) -> BookSchema:
        now = utcnow()
        record = BookSchema(
            id=_new_id(), created_at=now, updated_at=now, **book_fields(book)
        )
        with self.store.lock:
            self.store.books[record.id] = record
        return record.model_copy()

    def update_book(self, book_id: str, book: BookUpdate) -> Optional[BookSchema]:
        with self.store.lock:
            record = self.store.books.get(book_id)
            if record is None:
                return None
            changes = book_fields(book, exclude_unset=True)
            changes["updated_at"] = utcnow()
            record = record.model_copy(update=changes)
            self.store.books[book_id] = record
        return record.model_copy()

    def get_book(self, book_id: str) -> Optional[BookSchema]:
        record = self.store.books.get(book_id)
        return record.model_copy() if record else None

    def list_books(self, active_only: bool = False) -> List[BookSchema]:
        return [
            b.model_copy()
            for b in list(self.store.books.values())
            if b.is_active or not active_only
        ]

    def delete_book(self, book_id: str) -> bool:
        with self.store.lock:
            return self.store.books.pop(book_id, None) is not None

    def count_active_books(self) -> int:
        return sum(1 for b in list(self.store.books.values()) if b.is_active)

    def list_categories(self) -> List[str]:
        return sorted(
            {
                b.category
                for b in list(self.store.books.values())
                if b.is_active and b.category is not None
            }
        )

    def create_user(self, user: UserCreate) -> UserSchema:
        with self.store.lock:
            if any(u.email == user.email for u in self.store.users.values()):
                raise ValueError(f"Email {user.email} already exists")
            record = UserSchema(id=_new_id(), **user.model_dump(exclude={"password"}))
            self.store.users[record.id] = record
            self.store.password_hashes[record.id] = hash_password(user.password)
        return record.model_copy()

    def get_user(self, user_id: str) -> Optional[UserSchema]:
        record = self.store.users.get(user_id)
        return record.model_copy() if record else None

    def list_users(self) -> List[UserSchema]:
        return [u.model_copy() for u in list(self.store.users.values())]

    def delete_user(self, user_id: str) -> bool:
        with self.store.lock:
            self.store.password_hashes.pop(user_id, None)
            return self.store.users.pop(user_id, None) is not None

    def count_users(self) -> int:
        return len(self.store.users)


class MemoryCopyPool(CopyPool):
    def __init__(self, store: MemoryStore):
        self.store = store

    def add_copies(self, book_id: str, count: int, title: str) -> List[CopySchema]:
        created = []
        with self.store.lock:
            current = sum(1 for c in self.store.copies.values() if c.book_id == book_id)
            for sequence in range(current + 1, current + count + 1):
                record = CopySchema(
                    id=_new_id(),
                    book_id=book_id,
                    sequence=sequence,
                    copy_code=copy_code(title, sequence),
                    status=CopyStatus.AVAILABLE,
                )
                self.store.copies[record.id] = record
                self.store.copy_locks[record.id] = threading.Lock()
                created.append(record.model_copy())
        return created

    def claim_available_copy(self, book_id: str) -> CopySchema:
        candidates = sorted(
            (c for c in list(self.store.copies.values()) if c.book_id == book_id),
            key=lambda c: c.sequence,
        )
        for record in candidates:
            lock = self.store.copy_locks.get(record.id)
            if lock is None:
                continue
            with lock:
                if record.status == CopyStatus.AVAILABLE:
                    record.status = CopyStatus.BORROWED
                    return record.model_copy()
        raise NoCopiesAvailable(book_id)

    def release_copy(self, copy_id: str) -> None:
        record = self.store.copies.get(copy_id)
        lock = self.store.copy_locks.get(copy_id)
        if record is None or lock is None:
            return
        with lock:
            record.status = CopyStatus.AVAILABLE

    def total_and_available_counts(self, book_id: str) -> CopyCount:
        # one pass over a snapshot; each status is read under its own lock
        total = available = 0
        for record in list(self.store.copies.values()):
            lock = self.store.copy_locks.get(record.id)
            if record.book_id != book_id or lock is None:
                continue
            total += 1
            with lock:
                if record.status == CopyStatus.AVAILABLE:
                    available += 1
        return CopyCount(total=total, available=available)

    def get_copy(self, copy_id: str) -> Optional[CopySchema]:
        record = self.store.copies.get(copy_id)
        return record.model_copy() if record else None

    def copies_for_book(self, book_id: str) -> List[CopySchema]:
        return sorted(
            (
                c.model_copy()
                for c in list(self.store.copies.values())
                if c.book_id == book_id
            ),
            key=lambda c: c.sequence,
        )

    def delete_copies_for_book(self, book_id: str) -> int:
        with self.store.lock:
            doomed = [cid for cid, c in self.store.copies.items() if c.book_id == book_id]
            for cid in doomed:
                del self.store.copies[cid]
                del self.store.copy_locks[cid]
        return len(doomed)


class MemoryLoanLedger(LoanLedger):
    def __init__(self, store: MemoryStore):
        self.store = store

    def open_loan(
        self,
        user_id: str,
        book_id: str,
        copy_id: str,
        due_at: datetime,
        now: Optional[datetime] = None,
    ) -> LoanSchema:
        record = LoanSchema(
            id=_new_id(),
            user_id=user_id,
            book_id=book_id,
            copy_id=copy_id,
            borrow_date=now or utcnow(),
            due_date=as_utc(due_at),
            return_date=None,
            status=LoanStatus.BORROWED,
            reminder_sent=False,
        )
        with self.store.lock:
            self.store.loans[record.id] = record
            self.store.loan_locks[record.id] = threading.Lock()
        return record.model_copy()

    def _locked(self, loan_id: str):
        record = self.store.loans.get(loan_id)
        lock = self.store.loan_locks.get(loan_id)
        if record is None or lock is None:
            raise LoanNotFoundError(loan_id)
        return record, lock

    def close_loan(self, loan_id: str, now: Optional[datetime] = None) -> LoanSchema:
        record, lock = self._locked(loan_id)
        with lock:
            if record.return_date is not None:
                raise AlreadyReturnedError(loan_id)
            record.return_date = now or utcnow()
            record.status = LoanStatus.RETURNED
            return record.model_copy()

    def mark_reminder_sent(
        self, loan_id: str, now: Optional[datetime] = None
    ) -> LoanSchema:
        record, lock = self._locked(loan_id)
        with lock:
            if derive_status(record, now) != LoanStatus.OVERDUE:
                raise NotOverdueError(loan_id)
            record.reminder_sent = True
            record.status = LoanStatus.OVERDUE
            return record.model_copy()

    def get_loan(self, loan_id: str) -> Optional[LoanSchema]:
        record = self.store.loans.get(loan_id)
        return record.model_copy() if record else None

    def _view(self, record: LoanSchema, now: Optional[datetime]) -> LoanView:
        book = self.store.books.get(record.book_id)
        book_copy = self.store.copies.get(record.copy_id)
        user = self.store.users.get(record.user_id)
        view = build_loan_view(
            record,
            book=book.model_copy() if book else None,
            book_copy=book_copy.model_copy() if book_copy else None,
            user=user.model_copy() if user else None,
            now=now,
        )
        lock = self.store.loan_locks.get(record.id)
        if lock is not None:
            with lock:
                # a return made after the view was built must not be overwritten
                if record.return_date is None or view.status == LoanStatus.RETURNED:
                    record.status = view.status
        return view

    def get_loan_view(
        self, loan_id: str, now: Optional[datetime] = None
    ) -> Optional[LoanView]:
        record = self.store.loans.get(loan_id)
        return self._view(record, now) if record else None

    def loans_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[LoanView]:
        return [
            self._view(record, now)
            for record in list(self.store.loans.values())
            if record.user_id == user_id
        ]

    def all_loans(self, now: Optional[datetime] = None) -> List[LoanView]:
        return [self._view(record, now) for record in list(self.store.loans.values())]

    def recent_loans(
        self, limit: int = RECENT_LOANS_LIMIT, now: Optional[datetime] = None
    ) -> List[LoanView]:
        # sorted() is stable, so equal borrow dates keep insertion order
        ordered = sorted(
            list(self.store.loans.values()),
            key=lambda record: record.borrow_date,
            reverse=True,
        )
        return [self._view(record, now) for record in ordered[:limit]]

    def open_loans_for_user(self, user_id: str) -> List[LoanSchema]:
        return [
            record.model_copy()
            for record in list(self.store.loans.values())
            if record.user_id == user_id and record.return_date is None
        ]

    def delete_loans_for_book(self, book_id: str) -> int:
        return self._delete_where(lambda record: record.book_id == book_id)

    def delete_loans_for_user(self, user_id: str) -> int:
        return self._delete_where(lambda record: record.user_id == user_id)

    def _delete_where(self, predicate) -> int:
        with self.store.lock:
            doomed = [lid for lid, record in self.store.loans.items() if predicate(record)]
            for lid in doomed:
                del self.store.loans[lid]
                del self.store.loan_locks[lid]
        return len(doomed)
