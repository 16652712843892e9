"""Record store setup and access using SQLModel"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar

from sqlalchemy import func, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from distributor.config import AppConfig, config as default_config
from distributor.errors import StoreUnavailableError
from distributor.models.destination_upload import DestinationUpload
from distributor.models.received_file import ReceivedFile
from distributor.models.setting_entry import SettingEntry
from distributor.utils.audit_log import AuditLog, RECEIVED_LOG, DESTINATIONS_LOG
from distributor.utils.logger import get_logger
from distributor.utils.time_utils import utcnow

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)

CRITICAL_TABLES = ["settings", "received", "destination_uploads"]


class DatabaseService:
    """Single source of truth for settings, received files and upload records.

    Backed by SQLite in WAL mode. Every committed write is durable; ``flush()``
    checkpoints the WAL into the main database file.
    """

    def __init__(self, app_config: Optional[AppConfig] = None):
        self.config = app_config or default_config
        self.engine: Optional[Engine] = None
        self.audit = AuditLog(self.config.log_dir)

    def open(self):
        """Load or create the backing store, then run the legacy migration.

        Raises:
            StoreUnavailableError: If the storage path is inaccessible
        """
        if self.engine:
            return

        try:
            database_url = self._prepare_url(self.config.database_url)
            logger.debug(f"Connecting to database: {database_url.split('/')[-1]}")

            if database_url.startswith("sqlite://"):
                engine_args: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
                if ":memory:" in database_url or database_url == "sqlite://":
                    # One shared connection, otherwise every session sees an empty database
                    engine_args["poolclass"] = StaticPool
                self.engine = create_engine(database_url, echo=False, **engine_args)

                with self.engine.connect() as conn:
                    conn.exec_driver_sql("PRAGMA journal_mode=WAL")
                    conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
                    conn.exec_driver_sql("PRAGMA temp_store=MEMORY")
                    conn.commit()
            else:
                self.engine = create_engine(database_url, echo=False, pool_pre_ping=True)

            SQLModel.metadata.create_all(self.engine)
            self._verify_database_integrity()
        except Exception as e:
            logger.error(f"Failed to open record store: {e}")
            if self.engine:
                self.engine.dispose()
                self.engine = None
            raise StoreUnavailableError(f"Record store unavailable: {e}") from e

        self._migrate_legacy_files()
        logger.info("Record store opened", url=str(self.engine.url).split("/")[-1])

    def _prepare_url(self, database_url: str) -> str:
        """Create the directory of a file-backed SQLite URL"""
        if not database_url.startswith("sqlite:///") or ":memory:" in database_url:
            return database_url

        path = database_url.replace("sqlite:///", "", 1)
        db_dir = os.path.dirname(path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            logger.debug(f"Created database directory: {db_dir}")
        if db_dir and not os.access(db_dir, os.W_OK):
            raise PermissionError(f"Database directory is not writable: {db_dir}")
        return database_url

    def _verify_database_integrity(self):
        """Verify database integrity and structure"""
        if not self.engine or self.engine.dialect.name != "sqlite":
            return

        try:
            with self.engine.connect() as conn:
                integrity_status = conn.execute(text("PRAGMA integrity_check")).scalar()
                if integrity_status == "ok":
                    logger.debug("Database integrity check passed")
                else:
                    logger.warning(f"Database integrity check returned: {integrity_status}")

                tables_result = conn.execute(
                    text("SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'")
                )
                existing_tables = {row[0] for row in tables_result}
                missing_tables = [t for t in CRITICAL_TABLES if t not in existing_tables]
                if missing_tables:
                    logger.warning(f"Critical tables missing after create_all: {missing_tables}")
        except Exception as e:
            logger.warning(f"Database integrity check encountered an issue: {e}")

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    def _migrate_legacy_files(self):
        """Import settings.json / received.jsonl / destinations.jsonl.

        Each collection is imported only while it is empty, so restarts never
        double-import. A failure is logged per collection and never aborts
        startup or the other imports.
        """
        self._migrate_collection(SettingEntry, self._import_settings_file)
        self._migrate_collection(ReceivedFile, self._import_received_log)
        self._migrate_collection(DestinationUpload, self._import_destinations_log)

    def _migrate_collection(self, model: Type[SQLModel], importer: Callable[[], None]):
        try:
            if self.count(model) == 0:
                importer()
        except Exception as e:
            logger.error(f"Migration of {model.__tablename__} from legacy files failed: {e}", exc_info=True)

    def _import_settings_file(self):
        path = Path(self.config.config_dir) / "settings.json"
        try:
            with open(path, "r", encoding="utf-8") as f:
                saved = json.load(f)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Could not migrate {path.name}: {e}")
            return
        if not isinstance(saved, dict):
            logger.warning(f"⚠️ Could not migrate {path.name}: not a JSON object")
            return

        self.put_setting("main", saved)
        logger.info(f"📥 Migrated {path.name} into database")

    def _import_received_log(self):
        entries = self._read_jsonl(Path(self.config.log_dir) / RECEIVED_LOG)
        if not entries:
            return
        records: Dict[str, ReceivedFile] = {}
        for entry in entries:
            record = ReceivedFile.from_legacy_dict(entry)
            records[record.id] = record
        self._bulk_add(records.values())
        logger.info(f"📥 Migrated {len(records)} received entries into database")

    def _import_destinations_log(self):
        entries = self._read_jsonl(Path(self.config.log_dir) / DESTINATIONS_LOG)
        if not entries:
            return
        self._bulk_add(DestinationUpload.from_legacy_dict(e) for e in entries)
        logger.info(f"📥 Migrated {len(entries)} destination entries into database")

    @staticmethod
    def _read_jsonl(path: Path) -> List[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = [line.strip() for line in f if line.strip()]
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"⚠️ Could not read {path.name}: {e}")
            return []

        entries = []
        skipped = 0
        for line in lines:
            try:
                entry = json.loads(line)
            except ValueError:
                skipped += 1
                continue
            if isinstance(entry, dict):
                entries.append(entry)
            else:
                skipped += 1
        if skipped:
            logger.warning(f"⚠️ Skipped {skipped} malformed line(s) in {path.name}")
        return entries

    def _bulk_add(self, records: Iterable[SQLModel]):
        with self.get_session() as session:
            session.add_all(list(records))
            session.commit()

    # ------------------------------------------------------------------
    # Generic access
    # ------------------------------------------------------------------

    def get_session(self) -> Session:
        """Get database session"""
        if not self.engine:
            raise StoreUnavailableError("Record store not opened. Call open() first.")
        return Session(self.engine)

    def insert(self, record: ModelT) -> ModelT:
        """Insert a record; received files and upload records are mirrored to the audit files"""
        with self.get_session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)

        if isinstance(record, ReceivedFile):
            self.audit.append(RECEIVED_LOG, record.to_legacy_dict())
        elif isinstance(record, DestinationUpload):
            self.audit.append(DESTINATIONS_LOG, record.to_legacy_dict())
        return record

    def find(
        self,
        model: Type[ModelT],
        *where: Any,
        order_by: Any = None,
        limit: Optional[int] = None,
    ) -> List[ModelT]:
        """Find records of ``model`` matching all ``where`` clauses"""
        statement = select(model)
        for clause in where:
            statement = statement.where(clause)
        if order_by is not None:
            statement = statement.order_by(*order_by) if isinstance(order_by, (list, tuple)) else statement.order_by(order_by)
        if limit is not None:
            statement = statement.limit(limit)

        with self.get_session() as session:
            return list(session.exec(statement).all())

    def update(self, record: ModelT) -> ModelT:
        """Write back a modified record (settings entries only in practice)"""
        with self.get_session() as session:
            merged = session.merge(record)
            session.commit()
            session.refresh(merged)
            return merged

    def count(self, model: Type[SQLModel], *where: Any) -> int:
        statement = select(func.count()).select_from(model)
        for clause in where:
            statement = statement.where(clause)
        with self.get_session() as session:
            return int(session.exec(statement).one())

    # ------------------------------------------------------------------
    # Settings collection
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[Dict[str, Any]]:
        with self.get_session() as session:
            entry = session.get(SettingEntry, key)
            return dict(entry.value) if entry else None

    def put_setting(self, key: str, value: Dict[str, Any]):
        """Insert or replace a settings entry"""
        self.update(SettingEntry(key=key, value=value, updated_at=utcnow()))

    # ------------------------------------------------------------------
    # Received files / upload records
    # ------------------------------------------------------------------

    def get_received(self, received_id: str) -> Optional[ReceivedFile]:
        with self.get_session() as session:
            return session.get(ReceivedFile, received_id)

    def has_content_hash(self, content_hash: str) -> bool:
        return self.count(ReceivedFile, ReceivedFile.content_hash == content_hash) > 0

    def recent_received(self, limit: Optional[int] = 100) -> List[ReceivedFile]:
        """Newest receipts first"""
        return self.find(
            ReceivedFile,
            order_by=[ReceivedFile.received_at.desc(), ReceivedFile.id.desc()],
            limit=limit,
        )

    def uploads_for(self, received_id: str) -> List[DestinationUpload]:
        """Upload history of one file in append order"""
        return self.find(
            DestinationUpload,
            DestinationUpload.received_id == received_id,
            order_by=DestinationUpload.seq,
        )

    def uploads_for_many(self, received_ids: List[str]) -> Dict[str, List[DestinationUpload]]:
        """Upload histories keyed by received id, each in append order"""
        history: Dict[str, List[DestinationUpload]] = {rid: [] for rid in received_ids}
        if not received_ids:
            return history
        records = self.find(
            DestinationUpload,
            DestinationUpload.received_id.in_(received_ids),
            order_by=DestinationUpload.seq,
        )
        for record in records:
            history.setdefault(record.received_id, []).append(record)
        return history

    # ------------------------------------------------------------------
    # Durability
    # ------------------------------------------------------------------

    def flush(self):
        """Checkpoint the WAL into the database file"""
        if not self.engine or self.engine.dialect.name != "sqlite":
            return
        with self.engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA wal_checkpoint(PASSIVE)")
        logger.debug("Record store flushed")

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            with self.get_session() as session:
                session.exec(select(1)).first()
                return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self):
        """Flush and release the backing file"""
        if self.engine:
            try:
                if self.engine.dialect.name == "sqlite":
                    with self.engine.connect() as conn:
                        conn.exec_driver_sql("PRAGMA wal_checkpoint(TRUNCATE)")
            except Exception as e:
                logger.warning(f"Final checkpoint failed: {e}")
            self.engine.dispose()
            self.engine = None
            logger.debug("Database connection closed")
        self.audit.close()
