"""
TrailTiming — Server entry point.

Starts the FastAPI server with the REST API and the WebSocket feed.
Usage:
    python server.py
    python server.py --dev     # hot-reload
    # or: uvicorn server:app --host 0.0.0.0 --port 8080 --reload
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from core.database import get_connection, init_db, migrate_db, create_backup
from api.routes import router as api_router
from api.websocket import router as ws_router

logger = logging.getLogger("trailtiming")

PORT = 8080
BACKUP_INTERVAL_SECONDS = 600


# ─── Auto-backup scheduler ───────────────────────────────────────────

async def _auto_backup_loop():
    """Create an automatic backup every BACKUP_INTERVAL_SECONDS."""
    while True:
        await asyncio.sleep(BACKUP_INTERVAL_SECONDS)
        try:
            create_backup("auto")
            logger.info("Auto-backup created")
        except Exception as e:
            logger.error("Auto-backup failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init database + auto-backup. Shutdown: stop the backup task."""
    conn = get_connection()
    init_db(conn)
    migrate_db(conn)
    conn.close()

    backup_task = asyncio.create_task(_auto_backup_loop())

    yield

    backup_task.cancel()


app = FastAPI(title="TrailTiming", lifespan=lifespan)

app.include_router(api_router, prefix="/api")
app.include_router(ws_router)


# ─── Main ────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import sys
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    dev_mode = "--dev" in sys.argv
    print(f"TrailTiming server — http://localhost:{PORT}/api/status")
    uvicorn.run("server:app", host="0.0.0.0", port=PORT, reload=dev_mode)
