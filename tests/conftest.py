"""
POISE test configuration.

Adds the backend root to sys.path so tests run without installation.
"""

import sys
from pathlib import Path

backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))
