from .criteria import EVALUATORS, EligibleSet, evaluate_criteria  # noqa: F401
from .segment_service import (  # noqa: F401
    ReconciliationResult,
    SegmentService,
    is_refresh_due,
    refresh_dedupe_key,
    segment_criteria,
)
