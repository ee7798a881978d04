import os
from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI, HTTPException, Depends, Header, Request, Response, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from dotenv import load_dotenv

from circulation.exceptions import add_exception_handlers
from circulation.internal_message import (
    cleanup_messaging,
    publish_reminder,
    setup_messaging,
)
from circulation.models import Base
from circulation.schemas import (
    BookCreate,
    BookUpdate,
    BookWithAvailability,
    DashboardStats,
    LoanCreate,
    LoanView,
    UserCreate,
    UserSchema,
)
from circulation.service import CirculationService, sql_circulation
from circulation.status import UserRole
from circulation.storage import engine, get_db

from typing import List, Optional

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        Base.metadata.create_all(bind=engine)
        await setup_messaging(app)
    yield
    if not app.state.testing:
        await cleanup_messaging(app)


app = FastAPI(
    title="Library Circulation API",
    lifespan=lifespan,
    description="Copy allocation and loan lifecycle for the library catalog",
    version="1.0.0",
)

add_exception_handlers(app)


def get_service(db: Session = Depends(get_db)) -> CirculationService:
    return sql_circulation(db)


@app.get("/health")
def health_check():
    return {"status": "healthy"}


# Books
@app.get("/books", response_model=List[BookWithAvailability])
def list_books(service: CirculationService = Depends(get_service)):
    return service.list_books(active_only=True)


@app.get("/books/available-for-loans", response_model=List[BookWithAvailability])
def list_available_books(service: CirculationService = Depends(get_service)):
    return service.available_books()


@app.get("/books/categories", response_model=List[str])
def list_categories(service: CirculationService = Depends(get_service)):
    return service.categories()


@app.get("/books/{book_id}", response_model=BookWithAvailability)
def fetch_single_book(book_id: str, service: CirculationService = Depends(get_service)):
    return service.get_book(book_id)


@app.get("/admin/books", response_model=List[BookWithAvailability])
def list_admin_books(service: CirculationService = Depends(get_service)):
    return service.list_books()


@app.post(
    "/admin/books",
    response_model=BookWithAvailability,
    status_code=status.HTTP_201_CREATED,
)
def create_book(book: BookCreate, service: CirculationService = Depends(get_service)):
    return service.create_book(book)


@app.put("/admin/books/{book_id}", response_model=BookWithAvailability)
def modify_book(
    book_id: str,
    book_update: BookUpdate,
    service: CirculationService = Depends(get_service),
):
    return service.update_book(book_id, book_update)


@app.delete("/admin/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_book(book_id: str, service: CirculationService = Depends(get_service)):
    service.delete_book(book_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Users
@app.get("/admin/users", response_model=List[UserSchema])
def list_users(service: CirculationService = Depends(get_service)):
    return service.catalog.list_users()


@app.post(
    "/admin/users", response_model=UserSchema, status_code=status.HTTP_201_CREATED
)
def create_user(user: UserCreate, service: CirculationService = Depends(get_service)):
    try:
        return service.catalog.create_user(user)
    except ValueError as e:
        logger.error(msg=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.delete("/admin/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_user(
    user_id: str,
    x_user_role: UserRole = Header(...),
    x_user_id: Optional[str] = Header(None),
    service: CirculationService = Depends(get_service),
):
    service.delete_user(user_id, requester_role=x_user_role, requester_id=x_user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Loans
@app.get("/loans/user/{user_id}", response_model=List[LoanView])
def list_user_loans(user_id: str, service: CirculationService = Depends(get_service)):
    return service.loans_for_user(user_id)


@app.get("/admin/loans", response_model=List[LoanView])
def list_loans(service: CirculationService = Depends(get_service)):
    return service.all_loans()


@app.post(
    "/admin/loans", response_model=LoanView, status_code=status.HTTP_201_CREATED
)
def create_loan(loan: LoanCreate, service: CirculationService = Depends(get_service)):
    return service.borrow_book(loan.user_id, loan.book_id, due_at=loan.due_date)


@app.post("/admin/loans/{loan_id}/return", status_code=status.HTTP_204_NO_CONTENT)
def return_loan(loan_id: str, service: CirculationService = Depends(get_service)):
    service.return_book(loan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/admin/loans/{loan_id}/remind", status_code=status.HTTP_204_NO_CONTENT)
async def send_reminder(
    loan_id: str,
    request: Request,
    service: CirculationService = Depends(get_service),
):
    # the ledger write is blocking database work, keep it off the event loop
    loan = await run_in_threadpool(service.send_overdue_reminder, loan_id)
    await publish_reminder(request.app, loan)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/admin/dashboard", response_model=DashboardStats)
def dashboard(service: CirculationService = Depends(get_service)):
    return service.dashboard_aggregate()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting circulation server on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
