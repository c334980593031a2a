"""PartnerMatch - tag-based partner and team matching.

Ranks users by how closely their interest tags match and coordinates
team membership across many process instances sharing one store.
"""

__version__ = "1.0.0"

from partnermatch.app import PartnerMatch, build
from partnermatch.config import PartnerMatchConfig
from partnermatch.core.errors import ErrorCode, OperationResult

__all__ = [
    "__version__",
    "PartnerMatch",
    "build",
    "PartnerMatchConfig",
    "ErrorCode",
    "OperationResult",
]
