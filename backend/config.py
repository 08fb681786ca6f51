import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    # Record store backend: "supabase" (production) or "sqlite" (local/demo)
    STORE_BACKEND = os.getenv("STORE_BACKEND", "supabase")

    # Supabase (production database + realtime feed)
    SUPABASE_URL = os.getenv("SUPABASE_URL")
    SUPABASE_KEY = os.getenv("SUPABASE_KEY")

    # SQLite (local demo store)
    SQLITE_DB_PATH = os.getenv("SQLITE_DB_PATH", "./production.db")

    # Change notifications
    REALTIME_DEBOUNCE_MS = int(os.getenv("REALTIME_DEBOUNCE_MS", "100"))

    # Error reporting
    ERROR_QUEUE_SIZE = int(os.getenv("ERROR_QUEUE_SIZE", "100"))

    # API Server
    API_HOST = os.getenv("API_HOST", "127.0.0.1")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @staticmethod
    def validate():
        """Ensure required credentials are present"""
        missing = []
        if Config.STORE_BACKEND not in ("supabase", "sqlite"):
            raise EnvironmentError(f"Unknown STORE_BACKEND: '{Config.STORE_BACKEND}'")

        if Config.STORE_BACKEND == "supabase":
            if not Config.SUPABASE_URL:
                missing.append("SUPABASE_URL")
            if not Config.SUPABASE_KEY:
                missing.append("SUPABASE_KEY")

        if missing:
            raise EnvironmentError(f"Missing required environment variables: {', '.join(missing)}")

        return True
