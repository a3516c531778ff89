import math

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Query

from config import settings

SQLALCHEMY_DATABASE_URL = settings.DATABASE_URL

connect_args = {}
if make_url(SQLALCHEMY_DATABASE_URL).get_backend_name() == "sqlite":
    connect_args["check_same_thread"] = False

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args=connect_args,
    echo=settings.SQL_ECHO
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class Page:
    """One page of a query result plus the numbers the API reports."""

    def __init__(self, items, total: int, page: int, per_page: int):
        self.items = items
        self.total = total
        self.page = page
        self.per_page = per_page

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))

    def pagination(self) -> dict:
        return {
            "current_page": self.page,
            "last_page": self.last_page,
            "per_page": self.per_page,
            "total": self.total,
        }


def paginate(query: Query, page: int = 1, per_page: int = None) -> Page:
    per_page = per_page or settings.DEFAULT_PER_PAGE
    per_page = max(1, min(per_page, settings.MAX_PER_PAGE))
    page = max(1, page)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items, total, page, per_page)
