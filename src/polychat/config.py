"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory: override with POLYCHAT_DATA_DIR env var
DATA_DIR = Path(os.environ.get("POLYCHAT_DATA_DIR", str(Path.home() / ".polychat")))

# Database path (sessions and settings share one file)
SQLITE_PATH = DATA_DIR / "polychat.db"

# Request defaults
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT_SECONDS = 120

# Image downscaling before base64 encoding
MAX_IMAGE_DIMENSION = 1024
JPEG_QUALITY = 85

# Session titles
TITLE_MAX_CHARS = 50
TITLE_ELLIPSIS = "..."
DEFAULT_TITLE = "New chat"
PREVIEW_MAX_CHARS = 100

# Per-provider credential env var, e.g. POLYCHAT_OPENROUTER_API_KEY
CREDENTIAL_ENV_TEMPLATE = "POLYCHAT_{provider}_API_KEY"
