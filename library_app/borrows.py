import logging
from datetime import timedelta
from typing import Dict, List, Optional, Union

from library_app.cache_manager import cache_manager
from library_app.catalog import BookCatalog
from library_app.config import settings
from library_app.models import Borrow, BorrowStatus, utcnow
from library_app.services.supabase import BackendError, Query, SupabaseClient

logger = logging.getLogger(__name__)


def invalidate_borrow_cache() -> None:
    cache_manager.invalidate_pattern("borrows:")


class BorrowWorkflow:
    """Borrow requests and their approve/deny/return transitions.

    Status changes are plain writes to the ``borrows`` row; the book's
    availability flag follows approvals and returns.
    """

    table = "borrows"

    def __init__(self, client: SupabaseClient, catalog: Optional[BookCatalog] = None) -> None:
        self.client = client
        self.catalog = catalog or BookCatalog(client)

    def request_borrow(self, book_id: str, user_id: str) -> Borrow:
        """Create a ``requested`` borrow due ``BORROW_PERIOD_DAYS`` from now."""
        borrow_date = utcnow()
        due_date = borrow_date + timedelta(days=settings.borrow_period_days)
        row = {
            "book_id": book_id,
            "user_id": user_id,
            "status": BorrowStatus.REQUESTED.value,
            "borrow_date": borrow_date.isoformat(),
            "due_date": due_date.isoformat(),
            "return_date": None,
        }
        created = self.client.db.insert(self.table, [row])
        borrow = Borrow.from_dict(created[0])
        invalidate_borrow_cache()
        logger.info("Borrow requested: book=%s user=%s", book_id, user_id)
        return borrow

    def update_borrow_status(self, borrow_id: str, status: Union[BorrowStatus, str]) -> Borrow:
        status = BorrowStatus(status)
        values = {"status": status.value}
        if status == BorrowStatus.RETURNED:
            values["return_date"] = utcnow().isoformat()

        rows = self.client.db.update(Query(self.table).eq("id", borrow_id), values)
        if not rows:
            raise LookupError("Borrow not found.")
        borrow = Borrow.from_dict(rows[0])
        invalidate_borrow_cache()
        logger.info("Borrow %s set to %s", borrow_id, status.value)

        if status in (BorrowStatus.APPROVED, BorrowStatus.RETURNED):
            self._sync_availability(borrow, available=status == BorrowStatus.RETURNED)
        return borrow

    def _sync_availability(self, borrow: Borrow, available: bool) -> None:
        # The status change is already stored; a failed flag update must not undo it.
        try:
            self.catalog.set_availability(borrow.book_id, available)
        except (LookupError, BackendError) as e:
            logger.warning("Could not set availability of book %s after borrow %s: %s", borrow.book_id, borrow.id, e)

    def return_book(self, borrow_id: str) -> Borrow:
        return self.update_borrow_status(borrow_id, BorrowStatus.RETURNED)

    def get_user_borrows(self, user_id: str) -> List[Borrow]:
        """The user's borrows with their books, newest first."""
        cache_key = f"borrows:user:{user_id}"
        cached = cache_manager.get(cache_key)
        if cached is not None:
            return list(cached)
        query = (
            Query(self.table)
            .embed("book", "book_id", "books")
            .eq("user_id", user_id)
            .order("borrow_date", ascending=False)
        )
        borrows = [Borrow.from_dict(row) for row in self.client.db.select(query)]
        cache_manager.set(cache_key, borrows)
        return list(borrows)

    def get_all_borrows(self, status: Union[BorrowStatus, str, None] = None) -> List[Borrow]:
        """Every borrow with book and borrower, newest first."""
        status = BorrowStatus(status) if status else None
        cache_key = f"borrows:all:{status.value if status else '*'}"
        cached = cache_manager.get(cache_key)
        if cached is not None:
            return list(cached)
        query = (
            Query(self.table)
            .embed("book", "book_id", "books")
            .embed("user", "user_id", "profiles")
            .order("borrow_date", ascending=False)
        )
        if status:
            query.eq("status", status.value)
        borrows = [Borrow.from_dict(row) for row in self.client.db.select(query)]
        cache_manager.set(cache_key, borrows)
        return list(borrows)

    @staticmethod
    def split_by_status(borrows: List[Borrow]) -> Dict[str, List[Borrow]]:
        """Group borrows the way the profile page shows them."""
        groups: Dict[str, List[Borrow]] = {"current": [], "pending": [], "returned": [], "denied": []}
        names = {
            BorrowStatus.APPROVED: "current",
            BorrowStatus.REQUESTED: "pending",
            BorrowStatus.RETURNED: "returned",
            BorrowStatus.DENIED: "denied",
        }
        for borrow in borrows:
            groups[names[borrow.status]].append(borrow)
        return groups
