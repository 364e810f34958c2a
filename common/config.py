import os

# Log level for the service (DEBUG shows every quality-search iteration)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Quiet window after the last settings change before finished jobs are re-queued
DEBOUNCE_SECONDS = float(os.getenv("DEBOUNCE_SECONDS", "0.6"))

# Short yield between picking a job and starting it, so readers see "processing"
TICK_DELAY_SECONDS = float(os.getenv("TICK_DELAY_SECONDS", "0.05"))

# Size-target quality search
SEARCH_MIN_QUALITY = float(os.getenv("SEARCH_MIN_QUALITY", "0.1"))
SEARCH_MAX_QUALITY = float(os.getenv("SEARCH_MAX_QUALITY", "1.0"))
SEARCH_MAX_ITERATIONS = int(os.getenv("SEARCH_MAX_ITERATIONS", "10"))
SEARCH_QUALITY_TOLERANCE = float(os.getenv("SEARCH_QUALITY_TOLERANCE", "0.05"))
SEARCH_FALLBACK_QUALITY = float(os.getenv("SEARCH_FALLBACK_QUALITY", "0.5"))

# Initial settings
DEFAULT_MAX_SIZE_KB = int(os.getenv("DEFAULT_MAX_SIZE_KB", "250"))
DEFAULT_FORMAT = os.getenv("DEFAULT_FORMAT", "image/jpeg")

# HTTP server bind address
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))
