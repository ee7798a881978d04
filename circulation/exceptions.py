from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for circulation errors."""

    status_code = 400


# Not found
class BookNotFoundError(LibraryException):
    status_code = 404

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} not found")


class UserNotFoundError(LibraryException):
    status_code = 404

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User with id {user_id} not found")


class LoanNotFoundError(LibraryException):
    status_code = 404

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan with id {loan_id} not found")


# Resource exhaustion
class NoCopiesAvailable(LibraryException):
    """Raised when every copy of a book is out at the moment of the claim."""

    status_code = 409

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"No copies available for book with id {book_id}")


# State conflicts
class AlreadyReturnedError(LibraryException):
    status_code = 409

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan with id {loan_id} was already returned")


class NotOverdueError(LibraryException):
    status_code = 409

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Only overdue loans can receive reminders (loan {loan_id})")


class SelfDeletionError(LibraryException):
    status_code = 400

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("You cannot delete your own account")


class ForbiddenError(LibraryException):
    status_code = 403

    def __init__(self, message: str):
        super().__init__(message)


class DatabaseError(LibraryException):
    status_code = 500

    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": "Invalid request parameters. Please check your input."},
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def library_exception_handler(request: Request, exc: LibraryException):
    logger.error(f"Library error: {str(exc)}")
    if isinstance(exc, DatabaseError):
        detail = "The request could not be completed. Please try again later."
    else:
        detail = str(exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LibraryException, library_exception_handler)
