import os
import tempfile

# The db engine is built at import time, so point it somewhere disposable first.
_DB_DIR = tempfile.mkdtemp(prefix="plinko-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'plinko.db')}"
os.environ.setdefault("PERSIST_OUTCOMES", "1")
os.environ.setdefault("STARTING_BALANCE", "1000.00")
