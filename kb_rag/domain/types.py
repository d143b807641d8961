from enum import Enum
from typing import Any

Vector = tuple[float, ...]  # dimension is fixed per index, validated by the index adapters
Score = float
Metadata = dict[str, Any]


class ScoreKind(str, Enum):
    """Direction of the raw score a vector index returns."""

    SIMILARITY = "similarity"  # higher is better, in [0, 1]
    DISTANCE = "distance"  # lower is better, already relevance-shaped
