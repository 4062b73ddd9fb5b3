import asyncio
import logging

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from .db import Base, engine, SessionLocal, ensure_schema
from .cleanup import purge_expired
from .errors import install_error_handlers
from .settings import settings
from .routers import health, auth, session, user
from .routers import reading, listening, writing, speaking
from .routers import grammar, vocabulary, gamification, feedback
from .routers import games, onboarding

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60

app = FastAPI(title="Lingo Coach API")
install_error_handlers(app)
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(session.router)
app.include_router(user.router)
app.include_router(reading.router)
app.include_router(listening.router)
app.include_router(writing.router)
app.include_router(speaking.router)
app.include_router(grammar.router)
app.include_router(vocabulary.router)
app.include_router(gamification.router)
app.include_router(feedback.router)
app.include_router(games.router)
app.include_router(onboarding.router)


def _run_cleanup() -> None:
	db = SessionLocal()
	try:
		purge_expired(db)
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Scheduled cleanup failed")
	finally:
		db.close()


async def _cleanup_watcher():
	while True:
		await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
		_run_cleanup()


@app.on_event("startup")
async def startup_event():
	Base.metadata.create_all(bind=engine)
	ensure_schema()
	_run_cleanup()
	asyncio.create_task(_cleanup_watcher())
