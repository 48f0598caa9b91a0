"""ORM Models — SQLAlchemy declarative models for all tables.

Invariants:
    - All models inherit from Base (db/base.py)
    - LedgerEvent and Asset are read-only inputs owned upstream
    - Cursor, DistributionRecord, AccountBalance, BatchMarker, CarriedBalance,
      WorkerLease are written only by this worker

Design Decisions:
    - One file per entity for locality
    - All models imported here so Base.metadata is complete for create_all/alembic
"""

from fee_distributor.models.ledger_event import LedgerEvent  # noqa: F401
from fee_distributor.models.asset import Asset  # noqa: F401
from fee_distributor.models.cursor import Cursor  # noqa: F401
from fee_distributor.models.batch_marker import BatchMarker  # noqa: F401
from fee_distributor.models.distribution import DistributionRecord  # noqa: F401
from fee_distributor.models.account_balance import AccountBalance  # noqa: F401
from fee_distributor.models.carried_balance import CarriedBalance  # noqa: F401
from fee_distributor.models.worker_lease import WorkerLease  # noqa: F401
