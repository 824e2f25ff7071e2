# Ensure the `backend` directory is importable so `from mapedge.*` works
from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT_DIR))

# Isolated settings for the test run; must be set before `mapedge.config` loads.
_TMP = Path(tempfile.mkdtemp(prefix="mapedge-tests-"))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DB_ECHO", "0")
os.environ.setdefault("BLOB_ROOT", str(_TMP / "blobs"))
os.environ.setdefault("LOG_DIR", str(_TMP / "logs"))
os.environ.setdefault("REGEN_TOKEN", "test-token")
os.environ.setdefault("IMAGE_RESIZE_ENABLED", "0")
os.environ.setdefault("PUBLIC_BASE_URL", "https://maps.example.org")
