import logging

from dotenv import load_dotenv
from fastapi import FastAPI

from paysync.app.config import SyncConfig, load_sync_config
from paysync.app.routes.sync import router as sync_router
from paysync.app.routes.webhooks import router as webhook_router
from paysync.app.services.sync import get_sync_engine
from paysync.reconcile_scheduler import shutdown_reconcile_scheduler, start_reconcile_scheduler

load_dotenv()

logger = logging.getLogger("paysync")


def configure_logging(config: SyncConfig) -> None:
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger().setLevel(config.log_level)


configure_logging(load_sync_config())

app = FastAPI(title="Payment State Sync API")

app.include_router(webhook_router)
app.include_router(sync_router)


@app.on_event("startup")
def setup_sync_engine() -> None:
    engine = get_sync_engine()
    engine.ensure_schema()
    start_reconcile_scheduler()
    logger.info("Payment state sync engine ready")


@app.on_event("shutdown")
def teardown_sync_engine() -> None:
    shutdown_reconcile_scheduler()
    get_sync_engine().close()
    get_sync_engine.cache_clear()


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}
