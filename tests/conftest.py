"""Keep the default data directory out of the working tree.

``database`` builds its engine from settings at import time, so the data dir
is pointed at a throwaway location before any test module imports it.
"""

import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
