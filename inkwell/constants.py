"""Default configuration settings for the inkwell package."""

from __future__ import annotations

# --- Vault Layout ---
INDEX_FILENAME = "index.db.enc"
ENTRY_SUFFIX = ".md.enc"
STAGED_SUFFIX = ".staged"
DIR_PERMISSIONS = 0o700
FILE_PERMISSIONS = 0o600

# RAM-backed filesystems checked (in order) for plaintext staging
TMPFS_PATHS = ("/dev/shm", "/run/shm")  # noqa: S108

# --- Session ---
DEFAULT_SESSION_TIMEOUT_MINUTES = 30
MAX_UNLOCK_ATTEMPTS = 3

# --- Key Derivation (scrypt) ---
KDF_SALT_BYTES = 16
KDF_N = 2**17
KDF_R = 8
KDF_P = 1
KEY_BYTES = 32

# --- Entry Codec ---
SEGMENT_SIZE = 64 * 1024

# --- Chunking & Embeddings ---
DEFAULT_CHUNK_SIZE = 700  # words
DEFAULT_CHUNK_OVERLAP = 100  # words
DEFAULT_EMBED_CONCURRENCY = 4
DEFAULT_EMBED_RETRIES = 2

# --- Retrieval ---
DEFAULT_TOP_K = 12
DEFAULT_REFLECTION_WINDOW = 3  # turns
DEFAULT_MAX_HISTORY_TURNS = 20
MAX_CONTEXT_CHARS = 12000  # ~3000 tokens at 4 chars/token

# --- Inference Backend ---
DEFAULT_OPENAI_BASE_URL = "http://127.0.0.1:11434/v1"
DEFAULT_CHAT_MODEL = "gemma3:4b"
DEFAULT_EMBED_MODEL = "embeddinggemma"
DEFAULT_REQUEST_TIMEOUT = 120.0
