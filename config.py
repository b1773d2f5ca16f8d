"""
Configuration settings for MediWallet.

Values come from the environment (optionally a local .env file). Nothing is
created on import; the store and blob store create their directories lazily.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ----------------------------------------------------------------------
# Storage
# ----------------------------------------------------------------------
DATA_DIR = Path(os.environ.get("MEDIWALLET_DATA_DIR", "data"))
DB_PATH = Path(os.environ.get("MEDIWALLET_DB_PATH") or DATA_DIR / "mediwallet.db")
DOCUMENTS_ROOT = Path(os.environ.get("MEDIWALLET_DOCUMENTS_ROOT") or DATA_DIR / "documents")
IMAGE_DIR_NAME = "medical_tests"

# ----------------------------------------------------------------------
# Vision AI (remote, optional)
# ----------------------------------------------------------------------
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_API_URL = os.environ.get("OPENAI_API_URL", "https://api.openai.com/v1/chat/completions")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o")
AI_MAX_IMAGE_MB = 20
AI_MAX_TOKENS = 1000
AI_TIMEOUT_S = float(os.environ.get("AI_TIMEOUT_S", "60"))
