"""Book and user records the circulation core joins against."""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import bcrypt
from sqlalchemy import delete, distinct, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from circulation import models
from circulation.exceptions import DatabaseError
from circulation.schemas import BookCreate, BookSchema, BookUpdate, UserCreate, UserSchema
from circulation.storage import to_pk

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def book_fields(book: BookCreate | BookUpdate, exclude_unset: bool = False) -> dict:
    return book.model_dump(exclude_unset=exclude_unset, exclude={"number_of_copies"})


class Catalog(ABC):
    @abstractmethod
    def create_book(self, book: BookCreate) -> BookSchema:
        pass

    @abstractmethod
    def update_book(self, book_id: str, book: BookUpdate) -> Optional[BookSchema]:
        pass

    @abstractmethod
    def get_book(self, book_id: str) -> Optional[BookSchema]:
        pass

    @abstractmethod
    def list_books(self, active_only: bool = False) -> List[BookSchema]:
        pass

    @abstractmethod
    def delete_book(self, book_id: str) -> bool:
        pass

    @abstractmethod
    def count_active_books(self) -> int:
        pass

    @abstractmethod
    def list_categories(self) -> List[str]:
        """Sorted distinct categories of active books."""

    @abstractmethod
    def create_user(self, user: UserCreate) -> UserSchema:
        """Raises ValueError when the email is already registered."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserSchema]:
        pass

    @abstractmethod
    def list_users(self) -> List[UserSchema]:
        pass

    @abstractmethod
    def delete_user(self, user_id: str) -> bool:
        pass

    @abstractmethod
    def count_users(self) -> int:
        pass


class SqlCatalog(Catalog):
    def __init__(self, db: Session):
        self.db = db

    def _book(self, book_id: str) -> Optional[models.Book]:
        pk = to_pk(book_id)
        if pk is None:
            return None
        return self.db.get(models.Book, pk, populate_existing=True)

    def _user(self, user_id: str) -> Optional[models.User]:
        pk = to_pk(user_id)
        if pk is None:
            return None
        return self.db.get(models.User, pk, populate_existing=True)

    def create_book(self, book: BookCreate) -> BookSchema:
        try:
            db_book = models.Book(**book_fields(book))
            self.db.add(db_book)
            self.db.commit()
            self.db.refresh(db_book)
            return BookSchema.model_validate(db_book)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("create", str(e))

    def update_book(self, book_id: str, book: BookUpdate) -> Optional[BookSchema]:
        try:
            db_book = self._book(book_id)
            if db_book is None:
                return None
            for field, value in book_fields(book, exclude_unset=True).items():
                setattr(db_book, field, value)
            self.db.commit()
            self.db.refresh(db_book)
            return BookSchema.model_validate(db_book)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("update", str(e))

    def get_book(self, book_id: str) -> Optional[BookSchema]:
        try:
            db_book = self._book(book_id)
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        return BookSchema.model_validate(db_book) if db_book else None

    def list_books(self, active_only: bool = False) -> List[BookSchema]:
        try:
            query = select(models.Book).order_by(models.Book.id)
            if active_only:
                query = query.where(models.Book.is_active.is_(True))
            return [BookSchema.model_validate(b) for b in self.db.scalars(query).all()]
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))

    def delete_book(self, book_id: str) -> bool:
        try:
            result = self.db.execute(
                delete(models.Book)
                .where(models.Book.id == to_pk(book_id))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("delete", str(e))

    def count_active_books(self) -> int:
        try:
            return self.db.scalar(
                select(func.count(models.Book.id)).where(models.Book.is_active.is_(True))
            )
        except SQLAlchemyError as e:
            raise DatabaseError("count", str(e))

    def list_categories(self) -> List[str]:
        try:
            return list(
                self.db.scalars(
                    select(distinct(models.Book.category))
                    .where(
                        models.Book.is_active.is_(True),
                        models.Book.category.is_not(None),
                    )
                    .order_by(models.Book.category)
                ).all()
            )
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))

    def create_user(self, user: UserCreate) -> UserSchema:
        try:
            db_user = models.User(
                name=user.name,
                email=user.email,
                student_id=user.student_id,
                role=user.role.value,
                hashed_password=hash_password(user.password),
            )
            self.db.add(db_user)
            self.db.commit()
            self.db.refresh(db_user)
            return UserSchema.model_validate(db_user)
        except IntegrityError:
            self.db.rollback()
            raise ValueError(f"Email {user.email} already exists")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("create", str(e))

    def get_user(self, user_id: str) -> Optional[UserSchema]:
        try:
            db_user = self._user(user_id)
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        return UserSchema.model_validate(db_user) if db_user else None

    def list_users(self) -> List[UserSchema]:
        try:
            db_users = self.db.scalars(select(models.User).order_by(models.User.id)).all()
        except SQLAlchemyError as e:
            raise DatabaseError("fetch", str(e))
        return [UserSchema.model_validate(u) for u in db_users]

    def delete_user(self, user_id: str) -> bool:
        try:
            result = self.db.execute(
                delete(models.User)
                .where(models.User.id == to_pk(user_id))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("delete", str(e))

    def count_users(self) -> int:
        try:
            return self.db.scalar(select(func.count(models.User.id)))
        except SQLAlchemyError as e:
            raise DatabaseError("count", str(e))
