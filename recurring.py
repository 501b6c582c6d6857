"""Monthly re-creation of recurring transactions.

On each start the materializer looks at last calendar month. If it holds
transactions flagged ``isRecurring`` and the owner has not already been asked
this month, it offers to clone them into the current month. Accepting or
skipping both record the month in a marker store so the offer is made at most
once per month.
"""
import enum
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError

from models import Expense, ValidationError, db, expense_fields, parse_date

logger = logging.getLogger(__name__)

MARKER_KEY = "lastRecurringModalShown"

CLONED_FIELDS = (
    "title",
    "amount",
    "categoryId",
    "type",
    "paymentMethod",
    "tags",
    "isRecurring",
    "recurringFrequency",
)


class RecurringError(Exception):
    pass


class TransactionSourceError(RecurringError):
    """A transaction could not be read or created by the backing store."""


# ==============================
# DATE HELPERS
# ==============================

def month_key(d: date) -> str:
    return f"{d.year}-{d.month:02d}"


def previous_month_range(d: date):
    """First and last day of the calendar month before ``d``."""
    first_of_this_month = d.replace(day=1)
    last = first_of_this_month - timedelta(days=1)
    return last.replace(day=1), last


def clone_date(original: date, today: date) -> date:
    """Same day-of-month as ``original`` in the month of ``today``.

    Days past the end of the month roll over into the next one, so the 31st
    cloned into June lands on July 1st.
    """
    return today + relativedelta(day=1, days=original.day - 1)


# ==============================
# MARKER STORES
# ==============================

class MemoryMarkerStore:
    def __init__(self, initial=None):
        self._data = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonMarkerStore:
    """Key/value markers kept in a small JSON file on the local machine."""

    def __init__(self, path):
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except ValueError:
            logger.warning("Ignoring unreadable marker file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)


# ==============================
# TRANSACTION SOURCES
# ==============================

class DatabaseTransactionSource:
    """Reads and writes expenses straight through the SQLAlchemy session.

    Must be used inside a Flask application context.
    """

    def query_by_date_range(self, start: date, end: date) -> List[Dict[str, Any]]:
        try:
            rows = (Expense.query
                    .filter(Expense.date >= start, Expense.date <= end)
                    .order_by(Expense.date.asc(), Expense.id.asc())
                    .all())
        except SQLAlchemyError as e:
            raise TransactionSourceError(f"Failed to load transactions: {e}") from e
        return [row.to_dict() for row in rows]

    def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            expense = Expense(**expense_fields(record))
            db.session.add(expense)
            db.session.commit()
        except ValidationError as e:
            db.session.rollback()
            raise TransactionSourceError(str(e)) from e
        except SQLAlchemyError as e:
            db.session.rollback()
            raise TransactionSourceError(f"Failed to create transaction: {e}") from e
        return expense.to_dict()


# ==============================
# MATERIALIZER
# ==============================

class State(enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    OFFERING = "offering"


@dataclass
class Offer:
    month: str
    transactions: List[Dict[str, Any]]


@dataclass
class AcceptResult:
    created: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class RecurringMaterializer:
    def __init__(self, source, markers, today: Optional[date] = None):
        self.source = source
        self.markers = markers
        self.today = today
        self.state = State.IDLE
        self.offer: Optional[Offer] = None

    def _today(self) -> date:
        return self.today or date.today()

    def current_key(self) -> str:
        return month_key(self._today())

    def already_handled(self) -> bool:
        return self.markers.get(MARKER_KEY) == self.current_key()

    def pending(self) -> List[Dict[str, Any]]:
        """Last month's transactions flagged as recurring."""
        start, end = previous_month_range(self._today())
        transactions = self.source.query_by_date_range(start, end)
        return [t for t in transactions
                if t.get("isRecurring") and start <= parse_date(t["date"]) <= end]

    def should_offer(self) -> bool:
        if self.already_handled():
            return False
        return bool(self.pending())

    def check(self) -> Optional[Offer]:
        self.state = State.CHECKING
        if self.already_handled():
            logger.debug("Recurring offer already handled for %s", self.current_key())
            self.state = State.IDLE
            return None

        transactions = self.pending()
        if not transactions:
            self.state = State.IDLE
            return None

        self.offer = Offer(month=self.current_key(), transactions=transactions)
        self.state = State.OFFERING
        return self.offer

    def build_clone(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        clone = {k: transaction.get(k) for k in CLONED_FIELDS}
        clone["date"] = clone_date(parse_date(transaction.get("date")), self._today()).isoformat()
        return clone

    def _require_offer(self, offer: Optional[Offer]) -> Offer:
        offer = offer or self.offer
        if self.state is not State.OFFERING or offer is None:
            raise RecurringError("No recurring offer is pending")
        return offer

    def _finish(self) -> None:
        self.markers.set(MARKER_KEY, self.current_key())
        self.offer = None
        self.state = State.IDLE

    def accept(self, offer: Optional[Offer] = None) -> AcceptResult:
        """Clone every offered transaction into the current month.

        A failed creation is recorded and the rest still go ahead; clones
        already created are kept.
        """
        offer = self._require_offer(offer)
        result = AcceptResult()
        for transaction in offer.transactions:
            try:
                result.created.append(self.source.create(self.build_clone(transaction)))
            except (TransactionSourceError, ValidationError) as e:
                logger.error("Failed to clone recurring transaction %s: %s", transaction.get("id"), e)
                result.failed.append({"transaction": transaction, "error": str(e)})
        self._finish()
        return result

    def skip(self, offer: Optional[Offer] = None) -> None:
        self._require_offer(offer)
        self._finish()

    def run(self, decide: Callable[[Offer], bool], settle_delay: float = 0.0) -> Optional[AcceptResult]:
        """One full pass: check, ask ``decide``, then accept or skip."""
        if settle_delay:
            time.sleep(settle_delay)
        offer = self.check()
        if offer is None:
            return None
        if decide(offer):
            return self.accept(offer)
        self.skip(offer)
        return None
