"""Copy inventory and atomic claim/release of physical copies."""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from circulation import models
from circulation.exceptions import DatabaseError, NoCopiesAvailable
from circulation.schemas import CopyCount, CopySchema
from circulation.status import CopyStatus, utcnow
from circulation.storage import to_pk

logger = logging.getLogger(__name__)

CODE_PREFIX_LENGTH = 4


def copy_code(title: str, sequence: int) -> str:
    """Display code for a copy, e.g. ``copy_code("Clean Code", 1) == "CC-001"``."""
    prefix = "".join(word[0] for word in title.split()).upper()[:CODE_PREFIX_LENGTH]
    return f"{prefix}-{sequence:03d}"


class CopyPool(ABC):
    """Owns copy status transitions. Nothing else writes ``Copy.status``."""

    @abstractmethod
    def add_copies(self, book_id: str, count: int, title: str) -> List[CopySchema]:
        """Create ``count`` AVAILABLE copies numbered after the existing ones."""

    @abstractmethod
    def claim_available_copy(self, book_id: str) -> CopySchema:
        """Atomically move one AVAILABLE copy of the book to BORROWED.

        Raises NoCopiesAvailable when none is left; never waits.
        """

    @abstractmethod
    def release_copy(self, copy_id: str) -> None:
        """Move a copy back to AVAILABLE whatever its status. Idempotent."""

    @abstractmethod
    def total_and_available_counts(self, book_id: str) -> CopyCount:
        pass

    @abstractmethod
    def get_copy(self, copy_id: str) -> Optional[CopySchema]:
        pass

    @abstractmethod
    def copies_for_book(self, book_id: str) -> List[CopySchema]:
        pass

    @abstractmethod
    def delete_copies_for_book(self, book_id: str) -> int:
        pass


class SqlCopyPool(CopyPool):
    def __init__(self, db: Session):
        self.db = db

    def add_copies(self, book_id: str, count: int, title: str) -> List[CopySchema]:
        if count <= 0:
            return []
        try:
            current = self.db.scalar(
                select(func.count(models.BookCopy.id)).where(
                    models.BookCopy.book_id == to_pk(book_id)
                )
            )
            db_copies = [
                models.BookCopy(
                    book_id=to_pk(book_id),
                    sequence=current + offset,
                    copy_code=copy_code(title, current + offset),
                    status=CopyStatus.AVAILABLE.value,
                )
                for offset in range(1, count + 1)
            ]
            self.db.add_all(db_copies)
            self.db.commit()
            for db_copy in db_copies:
                self.db.refresh(db_copy)
            return [CopySchema.model_validate(db_copy) for db_copy in db_copies]
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("add copies", str(e))

    def claim_available_copy(self, book_id: str) -> CopySchema:
        try:
            candidates = self.db.scalars(
                select(models.BookCopy.id)
                .where(
                    models.BookCopy.book_id == to_pk(book_id),
                    models.BookCopy.status == CopyStatus.AVAILABLE.value,
                )
                .order_by(models.BookCopy.sequence)
            ).all()
            for copy_id in candidates:
                if self._compare_and_swap(copy_id):
                    self.db.commit()
                    return self.get_copy(copy_id)
                # another request took this copy between the read and the update
                logger.info(f"Copy {copy_id} was claimed concurrently, trying next")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("claim copy", str(e))

        logger.warning(f"No copies available for book {book_id}")
        raise NoCopiesAvailable(book_id)

    def _compare_and_swap(self, copy_id: int) -> bool:
        result = self.db.execute(
            update(models.BookCopy)
            .where(
                models.BookCopy.id == copy_id,
                models.BookCopy.status == CopyStatus.AVAILABLE.value,
            )
            .values(status=CopyStatus.BORROWED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_copy(self, copy_id: str) -> None:
        try:
            self.db.execute(
                update(models.BookCopy)
                .where(models.BookCopy.id == to_pk(copy_id))
                .values(status=CopyStatus.AVAILABLE.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("release copy", str(e))

    def total_and_available_counts(self, book_id: str) -> CopyCount:
        try:
            total, available = self.db.execute(
                select(
                    func.count(models.BookCopy.id),
                    func.sum(
                        case(
                            (models.BookCopy.status == CopyStatus.AVAILABLE.value, 1),
                            else_=0,
                        )
                    ),
                ).where(models.BookCopy.book_id == to_pk(book_id))
            ).one()
        except SQLAlchemyError as e:
            raise DatabaseError("count copies", str(e))
        return CopyCount(total=total or 0, available=available or 0)

    def get_copy(self, copy_id: str) -> Optional[CopySchema]:
        pk = to_pk(copy_id)
        if pk is None:
            return None
        try:
            db_copy = self.db.get(models.BookCopy, pk, populate_existing=True)
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        if db_copy is None:
            return None
        return CopySchema.model_validate(db_copy)

    def copies_for_book(self, book_id: str) -> List[CopySchema]:
        try:
            db_copies = self.db.scalars(
                select(models.BookCopy)
                .where(models.BookCopy.book_id == to_pk(book_id))
                .order_by(models.BookCopy.sequence)
                .execution_options(populate_existing=True)
            ).all()
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        return [CopySchema.model_validate(db_copy) for db_copy in db_copies]

    def delete_copies_for_book(self, book_id: str) -> int:
        try:
            result = self.db.execute(
                delete(models.BookCopy)
                .where(models.BookCopy.book_id == to_pk(book_id))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("delete copies", str(e))
