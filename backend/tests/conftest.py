import os
import sys
import tempfile

# The app wires its stores at import time, so point them at a scratch database first.
os.environ.setdefault(
    "MARKETPLACE_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="marketplace-tests-"), "marketplace.sqlite3"),
)

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
