import asyncio
import logging

from fastapi import FastAPI

from .db import Base, engine, SessionLocal
from .cleanup import purge_stale_snapshots
from .question_client import QuestionServiceClient
from .settings import settings
from .routers import health, practice

logger = logging.getLogger(__name__)

app = FastAPI(title="AP CS Practice Engine API")
app.include_router(health.router)
app.include_router(practice.router)


def setup_logging():
	logging.basicConfig(
		level=getattr(logging, settings.log_level.upper(), logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)


def _purge_once():
	with app.state.session_factory() as db:
		removed = purge_stale_snapshots(db)
	if removed:
		logger.info("Purged %d stale practice snapshots", removed)


async def _cleanup_watcher():
	# Startup already purged once; then daily
	while True:
		await asyncio.sleep(24 * 60 * 60)
		try:
			_purge_once()
		except Exception as e:
			logger.warning("Snapshot cleanup failed: %s", e)


@app.on_event("startup")
async def startup_event():
	setup_logging()
	# Tests may inject their own database and Question Service client
	if getattr(app.state, "db_engine", None) is None:
		app.state.db_engine = engine
		app.state.session_factory = SessionLocal
	if getattr(app.state, "question_client", None) is None:
		app.state.question_client = QuestionServiceClient()
	Base.metadata.create_all(bind=app.state.db_engine)
	try:
		_purge_once()
	except Exception as e:
		logger.warning("Snapshot cleanup at startup failed: %s", e)
	app.state.cleanup_task = asyncio.create_task(_cleanup_watcher())


@app.on_event("shutdown")
async def shutdown_event():
	practice.close_all()
	task = getattr(app.state, "cleanup_task", None)
	if task is not None:
		task.cancel()
	client = getattr(app.state, "question_client", None)
	if client is not None:
		await client.aclose()
		app.state.question_client = None
