from pydantic import BaseModel, Field, constr
from datetime import date, datetime
from libris.models import Role

class Caller(BaseModel):
    user_id: str
    role: Role

class ProfileIn(BaseModel):
    username: constr(min_length=3, max_length=50)
    email: str
    first_name: str
    last_name: str
    contact_number: str | None = None
    role: Role = Role.STUDENT

class RoleIn(BaseModel):
    role: Role

class ActiveIn(BaseModel):
    is_active: bool

class BookIn(BaseModel):
    call_number: constr(min_length=1)
    title: constr(min_length=1)
    author: constr(min_length=1)
    publisher: str
    genre: str
    total_copies: int = Field(default=1, ge=0)
    isbn: str | None = None
    publication_year: int | None = None
    description: str | None = None

class BookPatch(BaseModel):
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    genre: str | None = None
    isbn: str | None = None
    publication_year: int | None = None
    description: str | None = None

class CopiesIn(BaseModel):
    total_copies: int = Field(ge=0)

class IssueIn(BaseModel):
    book_id: str
    borrower_id: str | None = None

class ReturnIn(BaseModel):
    return_date: datetime | None = None

class LoanIdIn(BaseModel):
    issued_book_id: str

class RenewIn(BaseModel):
    issued_book_id: str
    renewal_days: int | None = Field(default=None, gt=0)

class RenewOut(BaseModel):
    success: bool
    message: str
    new_due_date: datetime | None = None

class ReservationIn(BaseModel):
    book_id: str

class FavoriteIn(BaseModel):
    book_id: str

class GoalIn(BaseModel):
    target_value: int = Field(gt=0)
    start_date: date | None = None

class NotesIn(BaseModel):
    notes: str | None = None
