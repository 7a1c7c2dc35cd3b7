import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Ingestion Configuration
class Config:
    # Completion collaborator (Ollama)
    OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "llama3")
    OLLAMA_VISION_MODEL = os.environ.get("OLLAMA_VISION_MODEL", "llava")
    COMPLETION_TIMEOUT = float(os.environ.get("COMPLETION_TIMEOUT", "60"))
    COMPLETION_MAX_RETRIES = int(os.environ.get("COMPLETION_MAX_RETRIES", "3"))
    COMPLETION_RETRY_DELAY = float(os.environ.get("COMPLETION_RETRY_DELAY", "2"))

    # Persistence collaborator (Supabase)
    SUPABASE_URL = os.environ.get("SUPABASE_URL")
    SUPABASE_KEY = os.environ.get("SUPABASE_KEY")
    SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")

    # Uploads
    ALLOWED_EXTENSIONS = {'csv', 'pdf', 'png', 'jpg', 'jpeg', 'gif', 'webp', 'ofx', 'qif'}

    # CSV
    CSV_BATCH_SIZE = 50
    CSV_BATCH_DELAY = float(os.environ.get("CSV_BATCH_DELAY", "2.0"))

    # PDF
    PDF_TEXT_LIMIT = 30000
    BANK_SCAN_WINDOW = 1000
    FINGERPRINT_WINDOW = 2000
    FINGERPRINT_LENGTH = 500
    PATTERN_MIN_TRANSACTIONS = 5
    ACCEPTED_YEARS = (2024, 2025)

    # Format learning
    LEARN_TEXT_LIMIT = 3000
    LEARN_SAMPLE_SIZE = 5
    LEARN_MIN_REPLAY_RATIO = 0.8
    PROCEDURE_TIMEOUT = float(os.environ.get("PROCEDURE_TIMEOUT", "5"))
    PROCEDURE_ISOLATION = _env_bool("PROCEDURE_ISOLATION", True)

    # Merchant enrichment
    ENRICH_BATCH_SIZE = 20
    REENHANCE_BATCH_SIZE = 10

    # HTTP
    PORT = int(os.environ.get("PORT", "5000"))
    FLASK_DEBUG = _env_bool("FLASK_DEBUG", False)
    LOG_FILE = os.environ.get("LOG_FILE", "server.log")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
        if origin.strip()
    ]
    PREVIEW_SIZE = 10
