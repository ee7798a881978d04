"""Loan records and their time-derived status."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from circulation import models
from circulation.exceptions import (
    AlreadyReturnedError,
    DatabaseError,
    LoanNotFoundError,
    NotOverdueError,
)
from circulation.schemas import (
    BookSchema,
    CopySchema,
    LoanSchema,
    LoanView,
    UserSchema,
    build_loan_view,
)
from circulation.status import LoanStatus, as_utc, derive_status, utcnow
from circulation.storage import to_pk

logger = logging.getLogger(__name__)

RECENT_LOANS_LIMIT = 5


class LoanLedger(ABC):
    """Owns loan records, return timestamps and status derivation.

    The ledger never claims or releases copies; the circulation service
    pairs ledger writes with the copy pool.
    """

    @abstractmethod
    def open_loan(
        self,
        user_id: str,
        book_id: str,
        copy_id: str,
        due_at: datetime,
        now: Optional[datetime] = None,
    ) -> LoanSchema:
        pass

    @abstractmethod
    def close_loan(self, loan_id: str, now: Optional[datetime] = None) -> LoanSchema:
        """Set the return timestamp.

        Raises LoanNotFoundError, or AlreadyReturnedError on a second return.
        """

    @abstractmethod
    def mark_reminder_sent(
        self, loan_id: str, now: Optional[datetime] = None
    ) -> LoanSchema:
        """Set the one-way reminder flag. Raises NotOverdueError unless overdue."""

    @abstractmethod
    def get_loan(self, loan_id: str) -> Optional[LoanSchema]:
        pass

    @abstractmethod
    def get_loan_view(
        self, loan_id: str, now: Optional[datetime] = None
    ) -> Optional[LoanView]:
        pass

    @abstractmethod
    def loans_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[LoanView]:
        pass

    @abstractmethod
    def all_loans(self, now: Optional[datetime] = None) -> List[LoanView]:
        pass

    @abstractmethod
    def recent_loans(
        self, limit: int = RECENT_LOANS_LIMIT, now: Optional[datetime] = None
    ) -> List[LoanView]:
        """Most recently borrowed first; equal borrow times keep insertion order."""

    @abstractmethod
    def open_loans_for_user(self, user_id: str) -> List[LoanSchema]:
        pass

    @abstractmethod
    def delete_loans_for_book(self, book_id: str) -> int:
        pass

    @abstractmethod
    def delete_loans_for_user(self, user_id: str) -> int:
        pass

    def derive_status(self, loan, now: Optional[datetime] = None) -> LoanStatus:
        return derive_status(loan, now)


class SqlLoanLedger(LoanLedger):
    def __init__(self, db: Session):
        self.db = db

    def _loan(self, loan_id: str) -> Optional[models.Loan]:
        pk = to_pk(loan_id)
        if pk is None:
            return None
        return self.db.get(models.Loan, pk, populate_existing=True)

    def open_loan(
        self,
        user_id: str,
        book_id: str,
        copy_id: str,
        due_at: datetime,
        now: Optional[datetime] = None,
    ) -> LoanSchema:
        now = now or utcnow()
        try:
            db_loan = models.Loan(
                user_id=to_pk(user_id),
                book_id=to_pk(book_id),
                copy_id=to_pk(copy_id),
                borrow_date=as_utc(now).astimezone(timezone.utc),
                due_date=as_utc(due_at).astimezone(timezone.utc),
                return_date=None,
                status=LoanStatus.BORROWED.value,
                reminder_sent=False,
            )
            self.db.add(db_loan)
            self.db.commit()
            self.db.refresh(db_loan)
            return LoanSchema.model_validate(db_loan)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("open loan", str(e))

    def close_loan(self, loan_id: str, now: Optional[datetime] = None) -> LoanSchema:
        now = now or utcnow()
        try:
            # conditional on return_date IS NULL so two concurrent returns
            # cannot both succeed
            result = self.db.execute(
                update(models.Loan)
                .where(
                    models.Loan.id == to_pk(loan_id),
                    models.Loan.return_date.is_(None),
                )
                .values(
                    return_date=now,
                    status=LoanStatus.RETURNED.value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("close loan", str(e))

        db_loan = self._loan(loan_id)
        if db_loan is None:
            raise LoanNotFoundError(loan_id)
        if result.rowcount != 1:
            raise AlreadyReturnedError(loan_id)
        return LoanSchema.model_validate(db_loan)

    def mark_reminder_sent(
        self, loan_id: str, now: Optional[datetime] = None
    ) -> LoanSchema:
        try:
            db_loan = self._loan(loan_id)
            if db_loan is None:
                raise LoanNotFoundError(loan_id)
            loan = LoanSchema.model_validate(db_loan)
            if derive_status(loan, now) != LoanStatus.OVERDUE:
                raise NotOverdueError(loan_id)
            db_loan.reminder_sent = True
            db_loan.status = LoanStatus.OVERDUE.value
            self.db.commit()
            self.db.refresh(db_loan)
            return LoanSchema.model_validate(db_loan)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("mark reminder", str(e))

    def get_loan(self, loan_id: str) -> Optional[LoanSchema]:
        try:
            db_loan = self._loan(loan_id)
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        return LoanSchema.model_validate(db_loan) if db_loan else None

    def _views(self, query, now: Optional[datetime]) -> List[LoanView]:
        try:
            db_loans = self.db.scalars(
                query.options(
                    selectinload(models.Loan.book),
                    selectinload(models.Loan.book_copy),
                    selectinload(models.Loan.user),
                ).execution_options(populate_existing=True)
            ).all()
            views = [self._view(db_loan, now) for db_loan in db_loans]
            self._refresh_status_cache(db_loans, views)
            return views
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("fetch", str(e))

    @staticmethod
    def _view(db_loan: models.Loan, now: Optional[datetime]) -> LoanView:
        return build_loan_view(
            LoanSchema.model_validate(db_loan),
            book=BookSchema.model_validate(db_loan.book) if db_loan.book else None,
            book_copy=(
                CopySchema.model_validate(db_loan.book_copy)
                if db_loan.book_copy
                else None
            ),
            user=UserSchema.model_validate(db_loan.user) if db_loan.user else None,
            now=now,
        )

    def _refresh_status_cache(self, db_loans, views: List[LoanView]) -> None:
        stale = [
            (db_loan.id, view.status)
            for db_loan, view in zip(db_loans, views)
            if db_loan.status != view.status.value
        ]
        if not stale:
            return
        for loan_id, status in stale:
            conditions = [models.Loan.id == loan_id, models.Loan.status != status.value]
            if status != LoanStatus.RETURNED:
                # a return committed after the read must not be overwritten
                conditions.append(models.Loan.return_date.is_(None))
            self.db.execute(
                update(models.Loan)
                .where(*conditions)
                .values(status=status.value)
                .execution_options(synchronize_session=False)
            )
        self.db.commit()

    def get_loan_view(
        self, loan_id: str, now: Optional[datetime] = None
    ) -> Optional[LoanView]:
        views = self._views(
            select(models.Loan).where(models.Loan.id == to_pk(loan_id)), now
        )
        return views[0] if views else None

    def loans_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[LoanView]:
        query = (
            select(models.Loan)
            .where(models.Loan.user_id == to_pk(user_id))
            .order_by(models.Loan.id)
        )
        return self._views(query, now)

    def all_loans(self, now: Optional[datetime] = None) -> List[LoanView]:
        return self._views(select(models.Loan).order_by(models.Loan.id), now)

    def recent_loans(
        self, limit: int = RECENT_LOANS_LIMIT, now: Optional[datetime] = None
    ) -> List[LoanView]:
        query = (
            select(models.Loan)
            .order_by(models.Loan.borrow_date.desc(), models.Loan.id)
            .limit(limit)
        )
        return self._views(query, now)

    def open_loans_for_user(self, user_id: str) -> List[LoanSchema]:
        try:
            db_loans = self.db.scalars(
                select(models.Loan)
                .where(
                    models.Loan.user_id == to_pk(user_id),
                    models.Loan.return_date.is_(None),
                )
                .order_by(models.Loan.id)
                .execution_options(populate_existing=True)
            ).all()
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        return [LoanSchema.model_validate(db_loan) for db_loan in db_loans]

    def delete_loans_for_book(self, book_id: str) -> int:
        return self._delete_where(models.Loan.book_id == to_pk(book_id))

    def delete_loans_for_user(self, user_id: str) -> int:
        return self._delete_where(models.Loan.user_id == to_pk(user_id))

    def _delete_where(self, condition) -> int:
        try:
            result = self.db.execute(
                delete(models.Loan)
                .where(condition)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("delete loans", str(e))
