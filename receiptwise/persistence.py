"""
Receipt and budget persistence for ReceiptWise.

Every record belongs to exactly one user. Receipts are stored one document per
receipt under the user's partition; budgets are stored as one document per
user keyed by category name. Writes are full-record replaces; receipts are
never partially patched.

Two backends share this interface:
- Postgres (JSONB documents, see receiptwise.database) by default.
- In-process dictionaries when USE_IN_MEMORY is set, for development and
  tests.

Listeners mirror the document store's snapshot subscriptions: a callback gets
the user's current data right away and again after every write for that user,
until the returned unsubscribe callable is invoked.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import uuid4

import psycopg
from psycopg.errors import IntegrityError, OperationalError
from psycopg.types.json import Jsonb
from pydantic import ValidationError

from receiptwise.database import get_connection, use_in_memory
from receiptwise.graph.state import Category, Receipt, ReceiptDraft, default_budgets

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a document store read or write fails."""
    pass


class ReceiptNotFoundError(PersistenceError):
    """Raised when a receipt id does not exist in the user's partition."""
    pass


ReceiptsCallback = Callable[[List[Receipt]], None]
BudgetsCallback = Callable[[Dict[Category, Decimal]], None]
ErrorCallback = Callable[[Exception], None]

_LOCK = threading.RLock()
_INMEM_RECEIPTS: Dict[str, Dict[str, Dict[str, Any]]] = {}
_INMEM_BUDGETS: Dict[str, Dict[str, str]] = {}
_RECEIPT_LISTENERS: Dict[str, Dict[int, tuple]] = {}
_BUDGET_LISTENERS: Dict[str, Dict[int, tuple]] = {}
_NEXT_LISTENER_ID = 0


def reset_in_memory_store() -> None:
    """Drop all in-memory documents and listeners."""
    with _LOCK:
        _INMEM_RECEIPTS.clear()
        _INMEM_BUDGETS.clear()
        _RECEIPT_LISTENERS.clear()
        _BUDGET_LISTENERS.clear()


def _require_user(user_id: str) -> None:
    if not user_id:
        raise PersistenceError("User not authenticated.")


@contextmanager
def _db_errors(action: str) -> Iterator[None]:
    """Convert driver errors into PersistenceError."""
    try:
        yield
    except PersistenceError:
        raise
    except (OperationalError, IntegrityError) as e:
        logger.error(f"❌ Database error while trying to {action}: {e}")
        raise PersistenceError(f"Failed to {action}: {e}")
    except psycopg.Error as e:
        logger.error(f"❌ Unexpected database error while trying to {action}: {e}")
        raise PersistenceError(f"Unexpected error trying to {action}: {e}")


# ---------------------------------------------------------------------------
# Document conversion
# ---------------------------------------------------------------------------

def _to_document(draft: ReceiptDraft) -> Dict[str, Any]:
    # absent optional fields are omitted, never stored as null
    return draft.model_dump(mode="json", exclude={"id"}, exclude_none=True)


def _from_document(receipt_id: str, data: Dict[str, Any]) -> Receipt:
    try:
        return Receipt.model_validate({**data, "id": receipt_id})
    except ValidationError as e:
        raise PersistenceError(f"Stored receipt {receipt_id} is malformed: {e}")


def _budgets_from_document(data: Optional[Dict[str, Any]]) -> Dict[Category, Decimal]:
    budgets = default_budgets()
    for key, value in (data or {}).items():
        try:
            budgets[Category(key)] = Decimal(str(value))
        except (ValueError, InvalidOperation):
            logger.warning(f"Ignoring malformed budget entry {key!r}: {value!r}")
    return budgets


def _sorted_newest_first(receipts: List[Receipt]) -> List[Receipt]:
    return sorted(receipts, key=lambda r: r.date, reverse=True)


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

def list_receipts(user_id: str) -> List[Receipt]:
    """Return all of the user's receipts, newest date first."""
    _require_user(user_id)
    if use_in_memory():
        with _LOCK:
            docs = dict(_INMEM_RECEIPTS.get(user_id, {}))
        return _sorted_newest_first([_from_document(rid, doc) for rid, doc in docs.items()])

    with _db_errors(f"load receipts for user {user_id}"):
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, data FROM receipt_documents
                    WHERE user_id = %s
                    ORDER BY data->>'date' DESC, updated_at DESC
                    """,
                    (user_id,),
                )
                rows = cur.fetchall()
    return [_from_document(rid, data) for rid, data in rows]


def get_receipt(user_id: str, receipt_id: str) -> Receipt:
    _require_user(user_id)
    if use_in_memory():
        with _LOCK:
            doc = _INMEM_RECEIPTS.get(user_id, {}).get(receipt_id)
        if doc is None:
            raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")
        return _from_document(receipt_id, doc)

    with _db_errors(f"load receipt {receipt_id}"):
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT data FROM receipt_documents WHERE user_id = %s AND id = %s",
                    (user_id, receipt_id),
                )
                row = cur.fetchone()
    if row is None:
        raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")
    return _from_document(receipt_id, row[0])


def add_receipt(user_id: str, draft: ReceiptDraft) -> Receipt:
    """Store a confirmed receipt under a new opaque id and return it."""
    _require_user(user_id)
    receipt_id = uuid4().hex
    doc = _to_document(draft)

    if use_in_memory():
        with _LOCK:
            _INMEM_RECEIPTS.setdefault(user_id, {})[receipt_id] = doc
    else:
        with _db_errors("save receipt"):
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "INSERT INTO receipt_documents (user_id, id, data) VALUES (%s, %s, %s)",
                        (user_id, receipt_id, Jsonb(doc)),
                    )

    logger.info(f"✅ Saved receipt {receipt_id} for user {user_id}: {draft.merchant} ${draft.amount}")
    _notify_receipts(user_id)
    return _from_document(receipt_id, doc)


def update_receipt(user_id: str, receipt: Receipt) -> Receipt:
    """Replace an existing receipt document with the given record."""
    _require_user(user_id)
    doc = _to_document(receipt)

    if use_in_memory():
        with _LOCK:
            docs = _INMEM_RECEIPTS.get(user_id, {})
            if receipt.id not in docs:
                raise ReceiptNotFoundError(f"Receipt {receipt.id} not found")
            docs[receipt.id] = doc
    else:
        with _db_errors(f"update receipt {receipt.id}"):
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE receipt_documents SET data = %s, updated_at = now()
                        WHERE user_id = %s AND id = %s
                        """,
                        (Jsonb(doc), user_id, receipt.id),
                    )
                    if cur.rowcount == 0:
                        raise ReceiptNotFoundError(f"Receipt {receipt.id} not found")

    logger.info(f"✅ Updated receipt {receipt.id} for user {user_id}")
    _notify_receipts(user_id)
    return _from_document(receipt.id, doc)


def delete_receipt(user_id: str, receipt_id: str) -> None:
    _require_user(user_id)
    if use_in_memory():
        with _LOCK:
            if _INMEM_RECEIPTS.get(user_id, {}).pop(receipt_id, None) is None:
                raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")
    else:
        with _db_errors(f"delete receipt {receipt_id}"):
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM receipt_documents WHERE user_id = %s AND id = %s",
                        (user_id, receipt_id),
                    )
                    if cur.rowcount == 0:
                        raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")

    logger.info(f"🗑️ Deleted receipt {receipt_id} for user {user_id}")
    _notify_receipts(user_id)


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

def get_budgets(user_id: str) -> Dict[Category, Decimal]:
    """Return the user's ceiling for every category (0 means no budget)."""
    _require_user(user_id)
    if use_in_memory():
        with _LOCK:
            return _budgets_from_document(_INMEM_BUDGETS.get(user_id))

    with _db_errors(f"load budgets for user {user_id}"):
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT data FROM budget_documents WHERE user_id = %s", (user_id,))
                row = cur.fetchone()
    return _budgets_from_document(row[0] if row else None)


def set_budget(user_id: str, category: Category, amount: Decimal) -> Dict[Category, Decimal]:
    """Upsert one category's ceiling, keeping the others, and return all budgets."""
    _require_user(user_id)
    entry = {category.value: str(amount)}

    if use_in_memory():
        with _LOCK:
            _INMEM_BUDGETS.setdefault(user_id, {}).update(entry)
    else:
        with _db_errors(f"save {category.value} budget"):
            with get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO budget_documents (user_id, data) VALUES (%s, %s)
                        ON CONFLICT (user_id) DO UPDATE SET
                            data = budget_documents.data || EXCLUDED.data,
                            updated_at = now()
                        """,
                        (user_id, Jsonb(entry)),
                    )

    logger.info(f"✅ Set {category.value} budget to ${amount} for user {user_id}")
    _notify_budgets(user_id)
    return get_budgets(user_id)


# ---------------------------------------------------------------------------
# Listeners
# ---------------------------------------------------------------------------

def _register(registry: Dict[str, Dict[int, tuple]], user_id: str, entry: tuple) -> Callable[[], None]:
    global _NEXT_LISTENER_ID
    with _LOCK:
        _NEXT_LISTENER_ID += 1
        listener_id = _NEXT_LISTENER_ID
        registry.setdefault(user_id, {})[listener_id] = entry

    def unsubscribe() -> None:
        with _LOCK:
            listeners = registry.get(user_id, {})
            listeners.pop(listener_id, None)
            if not listeners:
                registry.pop(user_id, None)

    return unsubscribe


def _report(on_error: Optional[ErrorCallback], error: Exception, what: str, user_id: str) -> None:
    if on_error is None:
        return
    try:
        on_error(error)
    except Exception:
        logger.exception(f"Error handler of a {what} listener for user {user_id} failed")


def _deliver(entries: List[tuple], load: Callable[[], Any], what: str, user_id: str) -> None:
    if not entries:
        return
    try:
        snapshot = load()
    except PersistenceError as e:
        logger.error(f"Error listening to {what} for user {user_id}: {e}")
        for _, on_error in entries:
            _report(on_error, e, what, user_id)
        return

    for callback, on_error in entries:
        try:
            callback(snapshot)
        except Exception as e:
            logger.exception(f"{what.capitalize()} listener for user {user_id} failed")
            _report(on_error, e, what, user_id)


def _notify_receipts(user_id: str) -> None:
    with _LOCK:
        entries = list(_RECEIPT_LISTENERS.get(user_id, {}).values())
    _deliver(entries, lambda: list_receipts(user_id), "receipts", user_id)


def _notify_budgets(user_id: str) -> None:
    with _LOCK:
        entries = list(_BUDGET_LISTENERS.get(user_id, {}).values())
    _deliver(entries, lambda: get_budgets(user_id), "budgets", user_id)


def listen_to_receipts(
    user_id: str,
    callback: ReceiptsCallback,
    on_error: Optional[ErrorCallback] = None,
) -> Callable[[], None]:
    """Subscribe to the user's receipt list; call the returned function to stop."""
    if not user_id:
        return lambda: None
    unsubscribe = _register(_RECEIPT_LISTENERS, user_id, (callback, on_error))
    _deliver([(callback, on_error)], lambda: list_receipts(user_id), "receipts", user_id)
    return unsubscribe


def listen_to_budgets(
    user_id: str,
    callback: BudgetsCallback,
    on_error: Optional[ErrorCallback] = None,
) -> Callable[[], None]:
    """Subscribe to the user's budgets; call the returned function to stop."""
    if not user_id:
        return lambda: None
    unsubscribe = _register(_BUDGET_LISTENERS, user_id, (callback, on_error))
    _deliver([(callback, on_error)], lambda: get_budgets(user_id), "budgets", user_id)
    return unsubscribe
