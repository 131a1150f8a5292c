# pyright: reportUnusedFunction=false
import os
import sys
import tempfile
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read once at import time, so the test database must be chosen first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="chatstream-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TEST_DB_DIR) / 'test.db'}"
os.environ.setdefault("CHAT_TRANSPORT", "fake")
os.environ.setdefault("ENV", "test")


def _ensure_test_schema() -> None:
    from chatstream.db.base import Base
    from chatstream.db.session import engine

    Base.metadata.create_all(bind=engine)


_ensure_test_schema()


@pytest.fixture(autouse=True)
def _isolate_db() -> None:
    from chatstream.db.base import Base
    from chatstream.db.session import engine

    tables = list(Base.metadata.sorted_tables)
    if not tables:
        return

    with engine.begin() as conn:
        for t in reversed(tables):
            _ = conn.execute(t.delete())
