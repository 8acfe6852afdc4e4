# logsieve/services/index.py
"""
Sparse Index for nearest-neighbour novelty scoring
This is the "memory" of what normal lines look like for one source

## How It Works

1. **Vectorize**: every token is hashed (murmurhash3, fixed seed) into one
   of D dimensions. The weight is 1 + ln(count) so long repetitive lines
   don't dominate. Rows are L2-normalized, so a dot product is a cosine.

2. **Train**: one row per *distinct* token sequence. A message repeated
   50,000 times in the baseline is a single row, which keeps lookup cost
   tied to the number of patterns rather than the raw line count.

3. **Query**: distance = 1 - max cosine similarity against every row,
   clamped to [0, 1]. 0.0 means "seen this exact pattern before",
   1.0 means "shares nothing with the baseline".

Hash collisions are accepted: with D = 65536 and a few thousand distinct
tokens per source, they are negligible.
"""

import logging
import math
from collections import Counter
from concurrent.futures import Executor
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
from scipy import sparse
from sklearn.preprocessing import normalize
from sklearn.utils import murmurhash3_32

from ..core.config import get_settings
from .tokenizer import Tokens

logger = logging.getLogger(__name__)

# Documented defaults (Settings.index_dimension / index_seed)
DIMENSION = 2 ** 16
INDEX_SEED = 1729

DTYPE = np.float32


@lru_cache(maxsize=262144)
def _feature(token: str, seed: int, dimension: int) -> int:
    """Stable column for a token"""
    return murmurhash3_32(token, seed=seed, positive=True) % dimension


def _row_features(tokens: Tokens, seed: int, dimension: int) -> Dict[int, float]:
    """Sparse row (column → weight) for one token sequence, before normalization"""
    row: Dict[int, float] = {}
    for token, count in Counter(tokens).items():
        col = _feature(token, seed, dimension)
        # Collisions simply accumulate
        row[col] = row.get(col, 0.0) + 1.0 + math.log(count)
    return row


def vectorize(
    token_sequences: Sequence[Tokens],
    dimension: int = None,
    seed: int = None
) -> sparse.csr_matrix:
    """
    Turn token sequences into an L2-normalized sparse matrix

    Args:
        token_sequences: One token tuple per row
        dimension: Hashed feature space size (defaults to settings)
        seed: Hash seed (defaults to settings)

    Returns:
        CSR matrix of shape (len(token_sequences), dimension).
        Empty token sequences give all-zero rows.

    Example:
        >>> m = vectorize([("port", "%NUM"), ()])
        >>> m.shape
        (2, 65536)
        >>> m[1].nnz
        0
    """
    cfg = get_settings()
    dimension = dimension if dimension is not None else cfg.index_dimension
    seed = seed if seed is not None else cfg.index_seed

    indptr = [0]
    indices: List[int] = []
    data: List[float] = []
    for tokens in token_sequences:
        row = _row_features(tokens, seed, dimension)
        for col in sorted(row):
            indices.append(col)
            data.append(row[col])
        indptr.append(len(indices))

    matrix = sparse.csr_matrix(
        (np.asarray(data, dtype=DTYPE),
         np.asarray(indices, dtype=np.int32),
         np.asarray(indptr, dtype=np.int64)),
        shape=(len(token_sequences), dimension)
    )
    if matrix.shape[0] == 0:
        return matrix
    # Zero rows stay zero (normalize leaves zero-norm rows untouched)
    return normalize(matrix, norm="l2", copy=False)


class SparseIndex:
    """
    Immutable, trained collection of baseline vectors for one source

    Build it with build_index(); never mutate it afterwards. Instances are
    shared across threads without locking.
    """

    def __init__(
        self,
        matrix: sparse.csr_matrix,
        dimension: int,
        seed: int,
        line_count: int = 0
    ):
        if matrix.shape[1] != dimension:
            raise ValueError(
                f"Matrix width {matrix.shape[1]} doesn't match "
                f"index dimension {dimension}"
            )
        self._matrix = matrix.tocsr()
        self.dimension = dimension
        self.seed = seed
        self.line_count = line_count

    @property
    def unique_count(self) -> int:
        """Number of trained rows (distinct non-empty token sequences)"""
        return self._matrix.shape[0]

    @property
    def is_empty(self) -> bool:
        """No baseline rows: every query scores 1.0"""
        return self.unique_count == 0

    def distances(
        self,
        token_sequences: Sequence[Tokens],
        batch_size: int = None,
        executor: Optional[Executor] = None
    ) -> np.ndarray:
        """
        Minimum normalized distance of each query to the trained rows

        Args:
            token_sequences: Queries (token tuples)
            batch_size: Query rows per matrix product (defaults to settings)
            executor: Pool the batches are spread over; None scores them
                on the calling thread. Results keep query order either way.

        Returns:
            float64 array of scores in [0, 1], one per query.
            Empty queries score 1.0 here; callers filter them before scoring.
        """
        count = len(token_sequences)
        if count == 0:
            return np.zeros(0, dtype=np.float64)
        if self.is_empty:
            return np.ones(count, dtype=np.float64)

        batch_size = batch_size or get_settings().score_batch_size
        batches = [
            token_sequences[start:start + batch_size]
            for start in range(0, count, batch_size)
        ]

        if executor is None or len(batches) == 1:
            best = [self._best_similarities(batch) for batch in batches]
        else:
            best = list(executor.map(self._best_similarities, batches))

        return np.clip(1.0 - np.concatenate(best), 0.0, 1.0)

    def _best_similarities(self, batch: Sequence[Tokens]) -> np.ndarray:
        queries = vectorize(batch, dimension=self.dimension, seed=self.seed)
        # (rows x D) sparse @ (D x batch) dense → (rows x batch) dense
        similarities = self._matrix @ queries.toarray().T
        return np.asarray(similarities, dtype=np.float64).max(axis=0)

    def distance(self, tokens: Tokens) -> float:
        """Score a single token sequence (see distances())"""
        return float(self.distances([tokens])[0])

    # ===== PERSISTENCE =====

    def to_state(self) -> Dict[str, Any]:
        """Plain-data form of the index (for Model serialization)"""
        return {
            "dimension": self.dimension,
            "seed": self.seed,
            "line_count": self.line_count,
            "shape": self._matrix.shape,
            "data": self._matrix.data,
            "indices": self._matrix.indices,
            "indptr": self._matrix.indptr,
        }

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "SparseIndex":
        matrix = sparse.csr_matrix(
            (np.asarray(state["data"], dtype=DTYPE),
             np.asarray(state["indices"]),
             np.asarray(state["indptr"])),
            shape=tuple(state["shape"])
        )
        return cls(
            matrix,
            dimension=state["dimension"],
            seed=state["seed"],
            line_count=state.get("line_count", 0)
        )

    def get_stats(self) -> dict:
        """Get statistics about the index"""
        return {
            "line_count": self.line_count,
            "unique_count": self.unique_count,
            "dimension": self.dimension,
            "seed": self.seed,
            "nnz": int(self._matrix.nnz),
        }

    def __len__(self):
        return self.unique_count

    def __repr__(self):
        return f"<SparseIndex(rows={self.unique_count}, dim={self.dimension}, seed={self.seed})>"


def build_index(
    token_sequences: Iterable[Tokens],
    dimension: int = None,
    seed: int = None
) -> SparseIndex:
    """
    Train an index from the baseline token sequences of one source

    Empty sequences are dropped (zero vectors never match anything) and
    exact repeats collapse into a single row.

    Args:
        token_sequences: Tokenized baseline lines
        dimension: Hashed feature space size (defaults to settings)
        seed: Hash seed stored with the index (defaults to settings)

    Returns:
        A SparseIndex; is_empty is True when no line had any token.
    """
    cfg = get_settings()
    dimension = dimension if dimension is not None else cfg.index_dimension
    seed = seed if seed is not None else cfg.index_seed

    line_count = 0
    unique: Dict[Tokens, None] = {}
    for tokens in token_sequences:
        line_count += 1
        if tokens:
            unique.setdefault(tuple(tokens), None)

    rows = list(unique)
    matrix = vectorize(rows, dimension=dimension, seed=seed)

    logger.debug(f"Built index: {line_count} lines → {len(rows)} unique rows")
    return SparseIndex(matrix, dimension=dimension, seed=seed, line_count=line_count)


def distance(index: SparseIndex, tokens: Tokens) -> float:
    """Minimum normalized distance of one token sequence to an index"""
    return index.distance(tokens)
