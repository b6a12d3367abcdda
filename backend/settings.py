"""
Configuration constants for the upload data service.

Values are read from the environment (optionally via a local .env file):
- DuckDB storage location
- CSV structural limits and type inference sampling
- Chunked ingestion and memory ceilings
- Pagination and per-user upload limits
- Retry policy for the storage transaction
"""
import os

from dotenv import load_dotenv

load_dotenv()

# ============================================================================
# DuckDB storage
# ============================================================================
DATABASE_PATH = os.getenv("DATABASE_PATH", ":memory:")

# ============================================================================
# CSV structure
# ============================================================================
MAX_CSV_ROWS = int(os.getenv("MAX_CSV_ROWS", "1000"))
MAX_HEADER_LENGTH = int(os.getenv("MAX_HEADER_LENGTH", "100"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(25 * 1024 * 1024)))
PREVIEW_ROWS = 5

# ============================================================================
# Type inference
# ============================================================================
TYPE_SAMPLE_SIZE = int(os.getenv("TYPE_SAMPLE_SIZE", "10"))

# ============================================================================
# Chunked ingestion
# ============================================================================
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "100"))
MAX_PROCESSING_ROWS = int(os.getenv("MAX_PROCESSING_ROWS", "50000"))
MAX_ESTIMATED_MB = float(os.getenv("MAX_ESTIMATED_MB", "256"))

# ============================================================================
# Pagination
# ============================================================================
DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000
MAX_HISTORY_LIMIT = 50

# ============================================================================
# Per-user upload limits
# ============================================================================
MAX_UPLOADS_PER_DAY = int(os.getenv("MAX_UPLOADS_PER_DAY", "10"))
MAX_TOTAL_ROWS = int(os.getenv("MAX_TOTAL_ROWS", "10000"))

# ============================================================================
# Storage retry
# ============================================================================
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "2"))
STORE_RETRY_BASE_DELAY = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.5"))
STORE_RETRY_MAX_DELAY = float(os.getenv("STORE_RETRY_MAX_DELAY", "2.0"))
