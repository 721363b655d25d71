# savethesquare/core/__init__.py
"""Framework-free selection core: geometry, selection store, text rasterizer."""

from .errors import (
    AlreadyDonatedWarning,
    CheckoutFailure,
    MalformedBoundaryData,
    OutsideProperty,
    PersistenceReadFailure,
    PersistenceWriteFailure,
    SelectionNotice,
    SquareError,
)
from .geometry import (
    Bounds,
    Coordinate,
    PropertyBoundary,
    compute_bounds,
    from_cell_key,
    is_inside_property,
    load_boundary,
    to_cell_key,
)
from .rasterizer import TextModeConfig, TextPreview, ViewportTransform, rasterize
from .selection import (
    CLICK,
    ClickProvenance,
    DonatedCellRecord,
    DonationBatch,
    DonorInfo,
    SelectionStore,
    TextProvenance,
)

__all__ = [
    "AlreadyDonatedWarning",
    "CheckoutFailure",
    "MalformedBoundaryData",
    "OutsideProperty",
    "PersistenceReadFailure",
    "PersistenceWriteFailure",
    "SelectionNotice",
    "SquareError",
    "Bounds",
    "Coordinate",
    "PropertyBoundary",
    "compute_bounds",
    "from_cell_key",
    "is_inside_property",
    "load_boundary",
    "to_cell_key",
    "TextModeConfig",
    "TextPreview",
    "ViewportTransform",
    "rasterize",
    "CLICK",
    "ClickProvenance",
    "DonatedCellRecord",
    "DonationBatch",
    "DonorInfo",
    "SelectionStore",
    "TextProvenance",
]
