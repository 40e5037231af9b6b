"""
Conversation store: contacts keyed by phone, each owning its message history.

Two interchangeable backends implement ConversationStore:
- MemoryConversationStore: volatile dicts, for tests and throwaway runs
- SqlConversationStore: durable tables through SQLAlchemy

Every operation is atomic with respect to concurrent callers in the same
process, and every mutation is visible to the next read. Records handed out
are detached snapshots; mutating them never touches stored state.
"""

import copy
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import case, create_engine, event, inspect, select, text, update
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inbox_relay.config import Settings
from inbox_relay.models import Base, Conversation, Message

logger = logging.getLogger(__name__)

DIRECTION_IN = "in"
DIRECTION_OUT = "out"
DIRECTION_SYSTEM = "system"


@dataclass
class MessageRecord:
    direction: str
    text: Optional[str]
    status: Optional[str]
    ts: int
    wa_msg_id: Optional[str] = None


@dataclass
class ConversationRecord:
    phone: str
    name: Optional[str]
    last_ts: int
    messages: list[MessageRecord] = field(default_factory=list)


def should_take_name(current: Optional[str], phone: str, name_hint: Optional[str]) -> bool:
    """A name hint only replaces a name that was never set meaningfully."""
    if not name_hint:
        return False
    return not current or current == phone


class ConversationStore(ABC):
    """Repository interface shared by every storage backend."""

    @abstractmethod
    def ensure_conversation(
        self, phone: str, name_hint: Optional[str], ts: int
    ) -> ConversationRecord:
        """
        Return the conversation for `phone`, creating it if needed.

        Applies the name hint per should_take_name() and advances last_ts to
        max(last_ts, ts). The returned record does not carry messages.
        """
        ...

    @abstractmethod
    def append_message(self, phone: str, message: MessageRecord) -> None:
        """Append a message to the conversation and advance its last_ts."""
        ...

    @abstractmethod
    def append_message_once(self, phone: str, message: MessageRecord) -> bool:
        """
        Append unless the conversation already holds a message with the same
        direction, text, status and ts. Check and append are one atomic step.
        Returns True when the message was appended.
        """
        ...

    @abstractmethod
    def update_message_status(self, wa_msg_id: str, status: str, ts: int) -> int:
        """
        Set the status of the message(s) with this provider id and advance
        their ts, and their conversation's last_ts, to max(ts, current).
        Returns the number of messages matched; zero is not an error.
        """
        ...

    @abstractmethod
    def list_conversations(self) -> list[ConversationRecord]:
        """All conversations, most recent activity first, messages oldest first."""
        ...

    @abstractmethod
    def get_conversation(self, phone: str) -> Optional[ConversationRecord]:
        ...

    @abstractmethod
    def latest_message(self, phone: str) -> Optional[MessageRecord]:
        """Most recent message for the contact in any direction."""
        ...

    def check_health(self) -> bool:
        return True

    def close(self) -> None:
        pass


# =============================================================================
# In-memory backend
# =============================================================================

class MemoryConversationStore(ConversationStore):
    """Volatile backend. A single lock guards the maps and the provider-id index."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._conversations: dict[str, ConversationRecord] = {}
        # provider id -> [(owning phone, stored message)]
        self._by_wa_msg_id: dict[str, list[tuple[str, MessageRecord]]] = {}

    def _ensure(self, phone: str, name_hint: Optional[str], ts: int) -> ConversationRecord:
        conv = self._conversations.get(phone)
        if conv is None:
            conv = ConversationRecord(phone=phone, name=name_hint or None, last_ts=ts)
            self._conversations[phone] = conv
            logger.debug(f"Created conversation: phone={phone}")
            return conv
        if should_take_name(conv.name, phone, name_hint):
            conv.name = name_hint
        conv.last_ts = max(conv.last_ts, ts)
        return conv

    @staticmethod
    def _snapshot(conv: ConversationRecord, with_messages: bool = True) -> ConversationRecord:
        messages = []
        if with_messages:
            # sorted() is stable, so equal timestamps keep arrival order
            messages = [copy.copy(m) for m in sorted(conv.messages, key=lambda m: m.ts)]
        return ConversationRecord(
            phone=conv.phone, name=conv.name, last_ts=conv.last_ts, messages=messages
        )

    def ensure_conversation(self, phone, name_hint, ts):
        with self._lock:
            return self._snapshot(self._ensure(phone, name_hint, ts), with_messages=False)

    def _append(self, phone: str, message: MessageRecord) -> None:
        stored = copy.copy(message)
        conv = self._ensure(phone, None, stored.ts)
        conv.messages.append(stored)
        if stored.wa_msg_id:
            self._by_wa_msg_id.setdefault(stored.wa_msg_id, []).append((phone, stored))

    def append_message(self, phone, message):
        with self._lock:
            self._append(phone, message)

    def append_message_once(self, phone, message):
        with self._lock:
            conv = self._conversations.get(phone)
            if conv is not None and any(
                (m.direction, m.text, m.status, m.ts)
                == (message.direction, message.text, message.status, message.ts)
                for m in conv.messages
            ):
                return False
            self._append(phone, message)
            return True

    def update_message_status(self, wa_msg_id, status, ts):
        with self._lock:
            matches = self._by_wa_msg_id.get(wa_msg_id, [])
            for phone, message in matches:
                message.status = status
                message.ts = max(message.ts, ts)
                conv = self._conversations[phone]
                conv.last_ts = max(conv.last_ts, message.ts)
            return len(matches)

    def list_conversations(self):
        with self._lock:
            ordered = sorted(self._conversations.values(), key=lambda c: c.last_ts, reverse=True)
            return [self._snapshot(conv) for conv in ordered]

    def get_conversation(self, phone):
        with self._lock:
            conv = self._conversations.get(phone)
            return self._snapshot(conv) if conv is not None else None

    def latest_message(self, phone):
        with self._lock:
            conv = self._conversations.get(phone)
            if conv is None or not conv.messages:
                return None
            # Latest ts wins; among equal ts the last appended wins
            _, newest = max(enumerate(conv.messages), key=lambda pair: (pair[1].ts, pair[0]))
            return copy.copy(newest)


# =============================================================================
# SQL backend
# =============================================================================

def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _message_record(row: Message) -> MessageRecord:
    return MessageRecord(
        direction=row.direction,
        text=row.text,
        status=row.status,
        ts=row.ts,
        wa_msg_id=row.wa_msg_id,
    )


def _conversation_record(row: Conversation, messages: Optional[list] = None) -> ConversationRecord:
    return ConversationRecord(
        phone=row.phone,
        name=row.name,
        last_ts=row.last_ts,
        messages=[_message_record(m) for m in messages or []],
    )


class SqlConversationStore(ConversationStore):
    """
    Durable backend on two tables (conversations, messages).

    One transaction per operation. Writes are serialised by a process-wide
    lock so this process is the single writer.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        url = make_url(database_url)
        engine_kwargs = {"echo": echo}
        is_sqlite = url.get_backend_name() == "sqlite"

        if is_sqlite:
            # check_same_thread=False: FastAPI runs sync endpoints in a threadpool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url.database in (None, "", ":memory:"):
                # Every connection must see the same in-memory database
                engine_kwargs["poolclass"] = StaticPool
            else:
                directory = os.path.dirname(url.database)
                if directory:
                    os.makedirs(directory, exist_ok=True)

        self.engine = create_engine(database_url, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _sqlite_pragmas)

        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._lock = threading.RLock()

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        logger.debug(f"Initializing database with URL: {self.engine.url!r}")
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database initialized successfully")

    def _ensure(self, db: Session, phone: str, name_hint: Optional[str], ts: int) -> Conversation:
        conv = db.execute(
            select(Conversation).where(Conversation.phone == phone)
        ).scalar_one_or_none()
        if conv is None:
            conv = Conversation(phone=phone, name=name_hint or None, last_ts=ts)
            db.add(conv)
            db.flush()
            logger.debug(f"Created conversation: phone={phone}")
            return conv
        if should_take_name(conv.name, phone, name_hint):
            conv.name = name_hint
        conv.last_ts = max(conv.last_ts, ts)
        return conv

    def ensure_conversation(self, phone, name_hint, ts):
        with self._lock, self._sessions.begin() as db:
            return _conversation_record(self._ensure(db, phone, name_hint, ts))

    def _append(self, db: Session, phone: str, message: MessageRecord) -> None:
        conv = self._ensure(db, phone, None, message.ts)
        db.add(Message(
            conversation_id=conv.id,
            wa_msg_id=message.wa_msg_id,
            direction=message.direction,
            text=message.text,
            status=message.status,
            ts=message.ts,
        ))

    def append_message(self, phone, message):
        with self._lock, self._sessions.begin() as db:
            self._append(db, phone, message)

    def append_message_once(self, phone, message):
        existing = (
            select(Message.id)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .where(
                Conversation.phone == phone,
                Message.direction == message.direction,
                Message.text.is_not_distinct_from(message.text),
                Message.status.is_not_distinct_from(message.status),
                Message.ts == message.ts,
            )
            .limit(1)
        )
        with self._lock, self._sessions.begin() as db:
            if db.execute(existing).first() is not None:
                return False
            self._append(db, phone, message)
            return True

    def update_message_status(self, wa_msg_id, status, ts):
        message_stmt = (
            update(Message)
            .where(Message.wa_msg_id == wa_msg_id)
            .values(status=status, ts=case((Message.ts < ts, ts), else_=Message.ts))
            .execution_options(synchronize_session=False)
        )
        owners = select(Message.conversation_id).where(Message.wa_msg_id == wa_msg_id)
        conversation_stmt = (
            update(Conversation)
            .where(Conversation.id.in_(owners))
            .values(last_ts=case((Conversation.last_ts < ts, ts), else_=Conversation.last_ts))
            .execution_options(synchronize_session=False)
        )
        with self._lock, self._sessions.begin() as db:
            matched = db.execute(message_stmt).rowcount
            if matched:
                db.execute(conversation_stmt)
            return matched

    def _messages_for(self, db: Session, conversation_ids: list) -> dict:
        grouped: dict = {cid: [] for cid in conversation_ids}
        if not conversation_ids:
            return grouped
        rows = db.execute(
            select(Message)
            .where(Message.conversation_id.in_(conversation_ids))
            .order_by(Message.conversation_id, Message.ts.asc(), Message.id.asc())
        ).scalars()
        for row in rows:
            grouped[row.conversation_id].append(row)
        return grouped

    def list_conversations(self):
        with self._sessions() as db:
            convs = db.execute(
                select(Conversation).order_by(Conversation.last_ts.desc(), Conversation.id.asc())
            ).scalars().all()
            grouped = self._messages_for(db, [c.id for c in convs])
            return [_conversation_record(c, grouped[c.id]) for c in convs]

    def get_conversation(self, phone):
        with self._sessions() as db:
            conv = db.execute(
                select(Conversation).where(Conversation.phone == phone)
            ).scalar_one_or_none()
            if conv is None:
                return None
            return _conversation_record(conv, self._messages_for(db, [conv.id])[conv.id])

    def latest_message(self, phone):
        with self._sessions() as db:
            row = db.execute(
                select(Message)
                .join(Conversation, Message.conversation_id == Conversation.id)
                .where(Conversation.phone == phone)
                .order_by(Message.ts.desc(), Message.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _message_record(row) if row is not None else None

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and both tables exist, False otherwise.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                tables = inspect(conn)
                for table in ("conversations", "messages"):
                    if not tables.has_table(table):
                        logger.error(f"Database schema not applied: '{table}' table not found")
                        return False
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        self.engine.dispose()


def build_store(settings: Settings) -> ConversationStore:
    """Construct the backend selected by STORE_BACKEND."""
    if settings.STORE_BACKEND == "memory":
        logger.info("Using in-memory conversation store")
        return MemoryConversationStore()
    store = SqlConversationStore(settings.DATABASE_URL)
    store.init_schema()
    return store
