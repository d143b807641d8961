from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from kb_rag.domain.models import BulkInsertResult, IndexedRecord, IndexStats, SearchHit
from kb_rag.domain.types import ScoreKind, Vector


@runtime_checkable
class VectorIndexPort(Protocol):
    """k-NN index over IndexedRecords, addressed by index name.

    `score_kind` declares how `knn_search` scores must be normalized.
    Writes may become visible to search only after a backend-defined delay;
    `refresh` forces visibility where the backend supports it.
    `delete_all` drops the index itself; deleting an absent index is a no-op.
    """

    score_kind: ScoreKind

    async def create_index_if_absent(self, name: str, dimension: int) -> bool: ...

    async def bulk_insert(
        self, name: str, records: Sequence[IndexedRecord]
    ) -> BulkInsertResult: ...

    async def knn_search(self, name: str, query_vector: Vector, k: int) -> list[SearchHit]: ...

    async def delete_all(self, name: str) -> None: ...

    async def stats(self, name: str) -> IndexStats: ...

    async def refresh(self, name: str) -> None: ...

    async def aclose(self) -> None: ...
