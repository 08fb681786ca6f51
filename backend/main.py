import logging

import uvicorn

from api.routes import create_app
from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


def run():
    """Validate configuration, build the app on the configured backend, serve it"""
    Config.validate()
    app = create_app()

    logger.info("=" * 50)
    logger.info("Production Tracking Service")
    logger.info("=" * 50)
    if Config.STORE_BACKEND == "sqlite":
        logger.info(f"Store: SQLite ({Config.SQLITE_DB_PATH})")
    else:
        logger.info(f"Store: Supabase ({Config.SUPABASE_URL})")
    logger.info(f"Realtime debounce: {Config.REALTIME_DEBOUNCE_MS} ms")
    logger.info(f"API: http://{Config.API_HOST}:{Config.API_PORT}")
    logger.info(f"Docs: http://{Config.API_HOST}:{Config.API_PORT}/docs")
    logger.info("=" * 50)

    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
