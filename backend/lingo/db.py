from __future__ import annotations
import logging

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url or "sqlite:///./lingo.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Lightweight migrations for development databases created by older builds (SQLite-friendly)
_ADDED_COLUMNS = {
	"auth_users": {
		"role": "VARCHAR(16) DEFAULT 'user' NOT NULL",
		"cefr_level": "VARCHAR(4)",
		"native_language": "VARCHAR(64)",
	},
	"auth_sessions": {
		"termination_reason": "VARCHAR(32)",
		"terminated_at": "DATETIME",
	},
	"speaking_sessions": {
		"evaluation_progress": "INTEGER DEFAULT 0 NOT NULL",
	},
}


def ensure_schema() -> None:
	inspector = inspect(engine)
	tables = set(inspector.get_table_names())
	for table, columns in _ADDED_COLUMNS.items():
		if table not in tables:
			continue
		existing = {c["name"] for c in inspector.get_columns(table)}
		missing = {name: ddl for name, ddl in columns.items() if name not in existing}
		if not missing:
			continue
		with engine.begin() as conn:
			for name, ddl in missing.items():
				logger.info("Adding column %s.%s", table, name)
				conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")
