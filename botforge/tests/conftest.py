from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway database before any botforge module builds it.
_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="botforge-tests-"), "botforge.sqlite3")
os.environ["DATABASE_URL"] = os.environ.get(
    "BOTFORGE_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
