"""
In-memory similarity grouping over one plan's memory vectors.

Clustering is greedy seed-and-grow in a stable order (creation time, then id).
It is deterministic and explainable rather than globally optimal; when a
vector is close to two seeds, the earlier-processed seed wins.
"""

from typing import Dict, List, Sequence, Tuple

import numpy as np

from .types import MemoryVector, VectorCluster


def stable_order(vectors: Sequence[MemoryVector]) -> List[MemoryVector]:
    """Sort vectors by creation time ascending, id as tie-break."""
    return sorted(vectors, key=lambda v: (v.created_at, v.id))


def normalize_vector(vector: np.ndarray) -> np.ndarray:
    """L2-normalize; zero vectors are returned unchanged."""
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


class VectorSimilarityEngine:
    """Cosine similarity, duplicate grouping and greedy clustering."""

    @staticmethod
    def cosine_similarity(a, b) -> float:
        """dot(a, b) / (|a| * |b|); 0.0 when either norm is zero."""
        a = np.asarray(a, dtype=np.float64)
        b = np.asarray(b, dtype=np.float64)
        if a.shape != b.shape:
            raise ValueError(f"Vector dimension mismatch: {a.shape[0]} != {b.shape[0]}")

        denominator = np.linalg.norm(a) * np.linalg.norm(b)
        if denominator == 0:
            return 0.0
        return float(np.dot(a, b) / denominator)

    def similarity_matrix(self, vectors: Sequence[MemoryVector]) -> np.ndarray:
        """Pairwise cosine similarities; rows of zero vectors are all zero."""
        if not vectors:
            return np.zeros((0, 0))

        dimensions = {v.dimension for v in vectors}
        if len(dimensions) > 1:
            raise ValueError(f"Vector dimension mismatch: {sorted(dimensions)}")

        matrix = np.vstack([v.vector for v in vectors]).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        safe_norms = np.where(norms == 0, 1.0, norms)
        normalized = matrix / safe_norms[:, None]
        normalized[norms == 0] = 0.0
        return normalized @ normalized.T

    def find_similar(self, source: MemoryVector, candidates: Sequence[MemoryVector],
                     threshold: float) -> List[Tuple[str, float]]:
        """Candidates (other than source) at or above threshold, most similar first."""
        results = []
        for candidate in candidates:
            if candidate.id == source.id:
                continue
            similarity = self.cosine_similarity(source.vector, candidate.vector)
            if similarity >= threshold:
                results.append((candidate.id, similarity))

        results.sort(key=lambda item: item[1], reverse=True)
        return results

    def find_duplicate_groups(self, vectors: Sequence[MemoryVector], threshold: float) -> List[List[MemoryVector]]:
        """
        Single pass duplicate grouping.

        Each unprocessed vector collects every other unprocessed vector at or
        above threshold; the whole group is then marked processed. Groups of
        one are not duplicates and are dropped. Members keep stable order, so
        the first member of each group is its oldest.
        """
        ordered = stable_order(vectors)
        sims = self.similarity_matrix(ordered)
        processed = [False] * len(ordered)
        groups = []

        for i, seed in enumerate(ordered):
            if processed[i]:
                continue

            member_idx = [
                j for j in range(len(ordered))
                if j != i and not processed[j] and sims[i, j] >= threshold
            ]
            if not member_idx:
                continue

            group_idx = sorted([i] + member_idx)
            for j in group_idx:
                processed[j] = True
            groups.append([ordered[j] for j in group_idx])

        return groups

    def find_clusters(self, vectors: Sequence[MemoryVector], threshold: float,
                      min_size: int, max_size: int) -> List[VectorCluster]:
        """
        Greedy seed-and-grow clustering.

        For each unassigned seed, gather unassigned neighbours at or above
        threshold by descending similarity, cap at max_size - 1, and accept
        the cluster only if it reaches min_size. Rejected seeds stay
        unassigned and can still join a later cluster.
        """
        ordered = stable_order(vectors)
        sims = self.similarity_matrix(ordered)
        assigned = [False] * len(ordered)
        clusters = []

        for i, seed in enumerate(ordered):
            if assigned[i]:
                continue

            neighbours = [
                (j, float(sims[i, j])) for j in range(len(ordered))
                if j != i and not assigned[j] and sims[i, j] >= threshold
            ]
            # Descending similarity, stable order breaks ties
            neighbours.sort(key=lambda item: (-item[1], item[0]))
            neighbours = neighbours[:max(0, max_size - 1)]

            if len(neighbours) + 1 < min_size:
                continue

            members = [seed] + [ordered[j] for j, _ in neighbours]
            avg_similarity = sum(s for _, s in neighbours) / len(neighbours) if neighbours else 1.0
            clusters.append(VectorCluster(members=members, similarity=avg_similarity))

            assigned[i] = True
            for j, _ in neighbours:
                assigned[j] = True

        return clusters


def dominant_dimension(vectors: Sequence[MemoryVector]) -> Tuple[int, Dict[int, int]]:
    """Most common dimensionality (ties go to the larger count first seen) and the histogram."""
    histogram: Dict[int, int] = {}
    for v in vectors:
        histogram[v.dimension] = histogram.get(v.dimension, 0) + 1
    if not histogram:
        return 0, histogram
    return max(histogram.items(), key=lambda item: item[1])[0], histogram
