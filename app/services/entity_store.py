"""Entity store: typed CRUD + filtered queries over named collections.

A thin layer over the SQLAlchemy session. Every write outside an
``atomic()`` block commits on its own, the way an independent call to a
hosted store would; writes inside ``atomic()`` are flushed and committed
together when the block exits.

Filters are dicts keyed by ``field`` (equality) or ``field__op``:

    store.query("leads", {"agent_id": uid, "status__in": ["won", "lost"]})
    store.query("leads", any_of=[{"email": e}, {"phone": p}], limit=1)
    store.query("leads", {"interest_tags__contains": "seller"})

Ops: eq, ne, in, contains, gt, gte, lt, lte, ilike, isnull.
"""

import json
import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import JSON, String, and_, cast, or_
from sqlalchemy.exc import SQLAlchemyError

from app.extensions import db
from app.models.activity import Activity
from app.models.calendar_event import CalendarEvent
from app.models.contact import Contact
from app.models.lead import Lead
from app.models.notification import Notification
from app.models.property import ContactPropertyLink, Property
from app.services.errors import NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "leads": Lead,
    "contacts": Contact,
    "properties": Property,
    "contact_properties": ContactPropertyLink,
    "calendar_events": CalendarEvent,
    "activities": Activity,
    "notifications": Notification,
}

# Never updated or deleted once written
APPEND_ONLY = {"activities"}

# Collections where only some fields may change after insert
MUTABLE_FIELDS = {
    "notifications": {"is_read"},
}

FILTER_OPS = {"eq", "ne", "in", "contains", "gt", "gte", "lt", "lte", "ilike", "isnull"}


def _escape_like(text):
    """Make % and _ in a LIKE pattern match literally (escape char is a backslash)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def as_dict(row):
    """Plain-dict view of a model row (JSON-friendly values)."""
    if row is None:
        return None
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = float(value)
        data[column.key] = value
    return data


class EntityStore:
    """CRUD over the collections in COLLECTIONS."""

    def __init__(self, session=None):
        self.session = session if session is not None else db.session
        self._depth = 0

    # ── Transactions ──────────────────────────────────────────

    @contextmanager
    def atomic(self):
        """Group writes so they commit together or not at all."""
        self._depth += 1
        try:
            yield self
        except Exception:
            self._depth -= 1
            if self._depth == 0:
                self.session.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            try:
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                raise StoreError(str(e)) from e

    @property
    def in_atomic(self):
        return self._depth > 0

    def _persist(self, action, collection):
        """Commit (or flush inside atomic) after a write."""
        try:
            if self._depth:
                self.session.flush()
            else:
                self.session.commit()
        except SQLAlchemyError as e:
            if not self._depth:
                self.session.rollback()
            logger.debug(f"Store {action} on {collection} failed: {e}")
            raise StoreError(f"{action} {collection} failed: {e}") from e

    # ── CRUD ─────────────────────────────────────────────────

    def _model(self, collection):
        model = COLLECTIONS.get(collection)
        if model is None:
            raise ValidationError(f"Unknown collection '{collection}'.")
        return model

    def _check_fields(self, model, fields):
        columns = set(model.__table__.columns.keys())
        unknown = [f for f in fields if f not in columns]
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {model.__tablename__}: {', '.join(sorted(unknown))}"
            )

    def insert(self, collection, row):
        model = self._model(collection)
        self._check_fields(model, row.keys())
        obj = model(**row)
        self.session.add(obj)
        self._persist("insert", collection)
        return obj

    def update(self, collection, id, patch):
        model = self._model(collection)
        if collection in APPEND_ONLY:
            raise ValidationError(f"{collection} is append-only.")
        allowed = MUTABLE_FIELDS.get(collection)
        if allowed is not None and set(patch) - allowed:
            raise ValidationError(
                f"Only {', '.join(sorted(allowed))} may change on {collection}."
            )
        self._check_fields(model, patch.keys())

        obj = self.session.get(model, id)
        if obj is None:
            raise NotFoundError(f"{collection} {id} not found.")
        for key, value in patch.items():
            setattr(obj, key, value)
        self._persist("update", collection)
        return obj

    def get(self, collection, id):
        if id is None:
            return None
        return self.session.get(self._model(collection), id)

    def delete(self, collection, id):
        model = self._model(collection)
        if collection in APPEND_ONLY:
            raise ValidationError(f"{collection} is append-only.")
        obj = self.session.get(model, id)
        if obj is None:
            raise NotFoundError(f"{collection} {id} not found.")
        self.session.delete(obj)
        self._persist("delete", collection)

    def query(self, collection, filters=None, any_of=None, order_by=None, limit=None):
        """Return rows matching all ``filters`` and at least one ``any_of`` group."""
        model = self._model(collection)
        q = self.session.query(model)

        for key, value in (filters or {}).items():
            q = q.filter(self._condition(model, key, value))

        if any_of:
            groups = []
            for group in any_of:
                conditions = [self._condition(model, k, v) for k, v in group.items()]
                if conditions:
                    groups.append(and_(*conditions))
            if groups:
                q = q.filter(or_(*groups))

        for clause in self._ordering(model, order_by):
            q = q.order_by(clause)

        if limit is not None:
            q = q.limit(limit)
        return q.all()

    # ── Helpers ──────────────────────────────────────────────

    def _column(self, model, field):
        if field not in model.__table__.columns:
            raise ValidationError(f"Unknown field '{field}' for {model.__tablename__}.")
        return getattr(model, field)

    def _condition(self, model, key, value):
        field, _, op = key.partition("__")
        op = op or "eq"
        if op not in FILTER_OPS:
            raise ValidationError(f"Unknown filter operator '{op}'.")
        column = self._column(model, field)

        if op == "eq":
            return column.is_(None) if value is None else column == value
        if op == "ne":
            return column.isnot(None) if value is None else column != value
        if op == "in":
            return column.in_(list(value))
        if op == "contains":
            if isinstance(column.type, JSON):
                # JSON lists are stored as text; match the quoted member.
                pattern = _escape_like(json.dumps(value))
                return cast(column, String).like(f"%{pattern}%", escape="\\")
            return column.contains(value, autoescape=True)
        if op == "gt":
            return column > value
        if op == "gte":
            return column >= value
        if op == "lt":
            return column < value
        if op == "lte":
            return column <= value
        if op == "ilike":
            return column.ilike(f"%{_escape_like(str(value))}%", escape="\\")
        # isnull
        return column.is_(None) if value else column.isnot(None)

    def _ordering(self, model, order_by):
        """Default order is oldest first (created_at, then id)."""
        if order_by is None:
            order_by = ["created_at", "id"]
        elif isinstance(order_by, str):
            order_by = [order_by]

        clauses = []
        for item in order_by:
            descending = item.startswith("-")
            column = self._column(model, item.lstrip("-"))
            clauses.append(column.desc() if descending else column.asc())
        return clauses
