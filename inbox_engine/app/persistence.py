from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from threading import RLock, local
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

T = TypeVar("T")

OPEN_STATUS_VALUES = ("OPEN", "PENDING", "ASSIGNED")


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def find_or_create(
    conn: Connection,
    find: Callable[[], Optional[T]],
    create: Callable[[], T],
    on_conflict: Optional[Callable[[IntegrityError], None]] = None,
) -> tuple[T, bool]:
    """
    Return the existing row or create it. A create that loses a race on a unique
    constraint rolls back its SAVEPOINT and re-reads the winner once.
    """
    existing = find()
    if existing is not None:
        return existing, False
    try:
        with conn.begin_nested():
            created = create()
        return created, True
    except IntegrityError as exc:
        existing = find()
        if existing is None:
            raise
        if on_conflict is not None:
            on_conflict(exc)
        return existing, False


class SqlPersistence:
    """
    SQLAlchemy-backed store for the reconciliation engine. Works with SQLite and
    PostgreSQL URLs; uniqueness invariants live in the schema.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = RLock()
        self._local = local()
        self.engine: Engine = self._build_engine(self.database_url)
        self.metadata = MetaData()

        self.contacts = Table(
            "contacts",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False, index=True),
            Column("full_name", String(200), nullable=False),
            Column("display_name", String(200), nullable=False),
            Column("primary_phone", String(255), nullable=True),
            Column("primary_email", String(255), nullable=True),
            Column("document", String(40), nullable=True),
            Column("custom_fields", JSON, nullable=False),
            Column("metadata", JSON, nullable=False),
            Column("last_interaction_at", DateTime, nullable=True),
            Column("last_activity_at", DateTime, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint("tenant_id", "primary_phone", name="uq_contacts_tenant_phone"),
        )
        self.contact_phones = Table(
            "contact_phones",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("contact_id", String(40), ForeignKey("contacts.id"), nullable=False),
            Column("phone_number", String(255), nullable=False),
            Column("phone_type", String(30), nullable=False),
            Column("is_primary", Boolean, nullable=False),
            UniqueConstraint("tenant_id", "phone_number", name="uq_contact_phones_tenant_number"),
        )
        self.contact_emails = Table(
            "contact_emails",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("contact_id", String(40), ForeignKey("contacts.id"), nullable=False),
            Column("email", String(255), nullable=False),
            Column("email_type", String(30), nullable=False),
            Column("is_primary", Boolean, nullable=False),
            UniqueConstraint("tenant_id", "email", name="uq_contact_emails_tenant_email"),
        )
        self.tags = Table(
            "tags",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("name", String(120), nullable=False),
            UniqueConstraint("tenant_id", "name", name="uq_tags_tenant_name"),
        )
        self.contact_tags = Table(
            "contact_tags",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("contact_id", String(40), ForeignKey("contacts.id"), nullable=False),
            Column("tag_id", String(40), ForeignKey("tags.id"), nullable=False),
            UniqueConstraint("contact_id", "tag_id", name="uq_contact_tags_pair"),
        )
        self.queues = Table(
            "queues",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("name", String(120), nullable=False),
            Column("channel", String(50), nullable=False),
            Column("is_active", Boolean, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            UniqueConstraint("tenant_id", "name", name="uq_queues_tenant_name"),
        )
        self.tickets = Table(
            "tickets",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("contact_id", String(40), ForeignKey("contacts.id"), nullable=False),
            Column("queue_id", String(40), ForeignKey("queues.id"), nullable=False),
            Column("status", String(20), nullable=False),
            Column("channel", String(50), nullable=False),
            Column("subject", String(200), nullable=True),
            Column("tags", JSON, nullable=False),
            Column("metadata", JSON, nullable=False),
            Column("last_message_at", DateTime, nullable=True),
            Column("last_message_preview", String(280), nullable=True),
            Column("closed_at", DateTime, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        open_status = self.tickets.c.status.in_(OPEN_STATUS_VALUES)
        Index(
            "uq_tickets_open_per_contact",
            self.tickets.c.tenant_id,
            self.tickets.c.contact_id,
            unique=True,
            sqlite_where=open_status,
            postgresql_where=open_status,
        )
        self.messages = Table(
            "messages",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("ticket_id", String(40), ForeignKey("tickets.id"), nullable=False, index=True),
            Column("contact_id", String(40), ForeignKey("contacts.id"), nullable=False),
            Column("instance_id", String(120), nullable=True),
            Column("direction", String(20), nullable=False),
            Column("type", String(20), nullable=False),
            Column("content", Text, nullable=False),
            Column("caption", Text, nullable=True),
            Column("media_url", Text, nullable=True),
            Column("media_mime_type", String(120), nullable=True),
            Column("media_file_name", String(255), nullable=True),
            Column("media_size", Integer, nullable=True),
            Column("status", String(20), nullable=False),
            Column("external_id", String(255), nullable=True),
            Column("idempotency_key", String(255), nullable=True),
            Column("metadata", JSON, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint("tenant_id", "external_id", name="uq_messages_tenant_external"),
        )
        self.inbound_media_jobs = Table(
            "inbound_media_jobs",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column(
                "message_id",
                String(40),
                ForeignKey("messages.id"),
                nullable=False,
                unique=True,
            ),
            Column("message_external_id", String(255), nullable=True),
            Column("instance_id", String(120), nullable=True),
            Column("media_type", String(40), nullable=True),
            Column("media_key", Text, nullable=True),
            Column("direct_path", Text, nullable=True),
            Column("status", String(20), nullable=False, index=True),
            Column("attempts", Integer, nullable=False),
            Column("next_retry_at", DateTime, nullable=True),
            Column("last_error", Text, nullable=True),
            Column("metadata", JSON, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.campaigns = Table(
            "campaigns",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("name", String(200), nullable=False),
            Column("agreement_id", String(255), nullable=True),
            Column("instance_id", String(120), nullable=True),
            Column("status", String(20), nullable=False),
            Column("metadata", JSON, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint(
                "tenant_id",
                "agreement_id",
                "instance_id",
                name="uq_campaigns_tenant_agreement_instance",
            ),
        )
        self.broker_leads = Table(
            "broker_leads",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("document", String(40), nullable=False),
            Column("full_name", String(200), nullable=False),
            Column("agreement_id", String(255), nullable=True),
            Column("matricula", String(120), nullable=True),
            Column("phone", String(40), nullable=True),
            Column("registrations", JSON, nullable=False),
            Column("tags", JSON, nullable=False),
            Column("margin", Float, nullable=True),
            Column("net_margin", Float, nullable=True),
            Column("score", Float, nullable=True),
            Column("raw", JSON, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint("tenant_id", "document", name="uq_broker_leads_tenant_document"),
        )
        self.lead_allocations = Table(
            "lead_allocations",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("lead_id", String(40), ForeignKey("broker_leads.id"), nullable=False),
            Column("campaign_id", String(40), ForeignKey("campaigns.id"), nullable=False),
            Column("status", String(20), nullable=False),
            Column("notes", Text, nullable=True),
            Column("payload", JSON, nullable=True),
            Column("received_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            UniqueConstraint(
                "tenant_id",
                "lead_id",
                "campaign_id",
                name="uq_lead_allocations_tenant_lead_campaign",
            ),
        )
        self._ensure_schema()

    @staticmethod
    def _build_engine(database_url: str) -> Engine:
        if not database_url.startswith("sqlite"):
            return create_engine(database_url, future=True, pool_pre_ping=True)

        options: dict = {"future": True, "connect_args": {"check_same_thread": False}}
        if database_url.split("?", 1)[0] in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        else:
            options["pool_pre_ping"] = True
        engine = create_engine(database_url, **options)

        # pysqlite's implicit transactions break SAVEPOINT; issue BEGIN ourselves.
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn) -> None:
            conn.exec_driver_sql("BEGIN")

        return engine

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a transaction, or join the one this thread already holds."""
        with self._lock:
            current: Optional[Connection] = getattr(self._local, "connection", None)
            if current is not None:
                yield current
                return
            with self.engine.begin() as conn:
                self._local.connection = conn
                try:
                    yield conn
                finally:
                    self._local.connection = None

    def ping(self) -> bool:
        try:
            with self.transaction() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()
