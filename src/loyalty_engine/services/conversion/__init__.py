from .conversion_service import (  # noqa: F401
    ConversionQuote,
    ConversionService,
    calculate,
    check_limits,
    format_rate,
)
