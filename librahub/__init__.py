"""LibraHub - library management core.

This package contains:
- Catalog, roster and loan operations (library.py)
- Borrow/return transitions and fines (circulation.py)
- Local/remote reconciliation (reconcile.py)
- Local key-value store (database.py)
- CLI (main.py) and HTTP API (api.py)
"""

__version__ = "1.0.0"
