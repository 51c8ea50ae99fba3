"""SQLAlchemy models package."""

from .conversion import ConversionHistory, ConversionRule, ConversionStatus  # noqa: F401
from .customer import Customer, DeviceTypeEnum  # noqa: F401
from .ledger import (  # noqa: F401
    LedgerEntry,
    LedgerEntryKind,
    LedgerEntrySource,
    LedgerEntryStatus,
)
from .segment import (  # noqa: F401
    CustomerSegment,
    RefreshFrequency,
    SegmentMembership,
    SegmentStatus,
    SegmentType,
)
