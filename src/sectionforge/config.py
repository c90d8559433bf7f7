# /sectionforge/config.py
"""
Centralized configuration for the section model.
Includes outline tuning, session lifecycle timings, quiz policy, model names and paths.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    raw = str(os.getenv(name, default) or "").strip().lower()
    return raw if raw in choices else default


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Application Toggles ---
USE_API_LLM = _env_bool("USE_API_LLM", False)              # True for Groq API, False for local Ollama
GENERATE_SECTION_SUMMARIES = _env_bool("GENERATE_SECTION_SUMMARIES", False)
ENABLE_SMART_GROUPING = _env_bool("ENABLE_SMART_GROUPING", True)

# --- Model Names ---
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "granite3.3:2b")
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "gemma2-9b-it")
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.3, minimum=0.0)
LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 2048, minimum=256)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/sectionforge/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))

CACHE_DIR = Path(os.getenv("CACHE_DIR", str(_DATA_DIR / "runtime_cache")))
DB_PATH = Path(os.getenv("DB_PATH", str(_DATA_DIR / "sectionforge.sqlite")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(_DATA_DIR / "logs")))

# --- Chunking Configuration ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 1000, minimum=128)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 150, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 4)

# --- Outline Tuning ---
SIMILARITY_THRESHOLD = _env_float("SIMILARITY_THRESHOLD", 0.8, minimum=0.0)
if SIMILARITY_THRESHOLD > 1.0:
    SIMILARITY_THRESHOLD = 1.0
# "seed" keeps the first-seen grouping; "transitive" closes the similarity relation.
GROUPING_MODE = _env_choice("GROUPING_MODE", "seed", {"seed", "transitive"})
MAX_SECTION_DEPTH = _env_int("MAX_SECTION_DEPTH", 3, minimum=1)
MAX_SECTIONS = _env_int("MAX_SECTIONS", 20, minimum=1)
EXTRACTOR_CONTENT_CHAR_LIMIT = _env_int("EXTRACTOR_CONTENT_CHAR_LIMIT", 24000, minimum=1000)

# --- Retrieval ---
RETRIEVER_K = _env_int("RETRIEVER_K", 8, minimum=1)

# --- Quiz Policy ---
CHARS_PER_QUESTION = _env_int("CHARS_PER_QUESTION", 600, minimum=1)
MAX_QUIZ_QUESTIONS = _env_int("MAX_QUIZ_QUESTIONS", 10, minimum=1)
QUIZ_DIFFICULTIES = ("easy", "medium", "hard")

# --- Session Lifecycle ---
SESSION_TTL_S = _env_float("SESSION_TTL_S", 60 * 60, minimum=1.0)
HEARTBEAT_TIMEOUT_S = _env_float("HEARTBEAT_TIMEOUT_S", 5 * 60, minimum=1.0)
SWEEP_INTERVAL_S = _env_float("SWEEP_INTERVAL_S", 60, minimum=0.05)

# --- Upload Validation ---
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 30 * 1024 * 1024, minimum=1024)
MAX_FILES_PER_BATCH = _env_int("MAX_FILES_PER_BATCH", 5, minimum=1)
ALLOWED_CONTENT_TYPES = ("application/pdf",)

# --- Create necessary directories ---
_DATA_DIR.mkdir(parents=True, exist_ok=True)
CACHE_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
