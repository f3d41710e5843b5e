# backend/stockdb/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see all tables.
- The package exposes a clear surface.

The actual model classes are kept in stockdb/apps/*/models.py.
"""

from .apps.locations import models as locations_models        # stock locations
from .apps.ledger import models as ledger_models              # movements + balances
from .apps.allocations import models as allocations_models    # allocations + consumptions
from .apps.receipts import models as receipts_models          # goods-received acknowledgements
from .apps.references import models as references_models      # catalog / vehicles / PO lines
from .apps.audit import models as audit_models                # audit trail

__all__ = [
    "locations_models",
    "ledger_models",
    "allocations_models",
    "receipts_models",
    "references_models",
    "audit_models",
]
