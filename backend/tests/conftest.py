import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The module-level broker opens BROKER_DB_PATH on import; keep test runs off the real data file.
os.environ.setdefault("BROKER_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="broker-tests-"), "broker.sqlite3"))
