# =============================================================================
# Clustering — k-means + Stratified Sampling over Chunk Embeddings
# =============================================================================
#
# Used by representative sampling (quiz / flashcards): instead of the top-k
# chunks nearest one query, pick a spread of chunks across the semantically
# distinct regions of the corpus.
#
# kmeans():
#   - Euclidean distance, k distinct randomly chosen vectors as initial
#     centroids
#   - stops early when an iteration leaves every assignment unchanged
#   - a cluster that loses all its members keeps its previous centroid
#   - k >= n gives each vector its own cluster: [0, 1, ..., n-1]
#
# stratified_sample():
#   - up to max(1, ceil(target / k)) items per cluster, in original order,
#     clusters visited in index order, never more than `target` items
#   - slots left by small clusters are filled round-robin from the unused
#     members of the others, so min(target, n) items come back
# =============================================================================

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import TypeVar

import numpy as np

T = TypeVar("T")


def kmeans(
    vectors: Sequence[Sequence[float]],
    k: int,
    max_iterations: int = 10,
    rng: np.random.Generator | None = None,
) -> list[int]:
    """
    Cluster vectors with Lloyd's k-means.

    Args:
        vectors: n vectors of equal dimension.
        k: Number of clusters.
        max_iterations: Upper bound on assign/update rounds.
        rng: Random generator for centroid initialisation (seed it in tests).

    Returns:
        Cluster index per input vector, in input order.
    """
    n = len(vectors)
    if n == 0 or k <= 0:
        return []
    if k >= n:
        return list(range(n))

    rng = rng or np.random.default_rng()
    points = np.asarray(vectors, dtype=float)
    centroids = points[rng.choice(n, size=k, replace=False)].copy()
    assignments = np.zeros(n, dtype=int)

    for _ in range(max_iterations):
        # (n, k) matrix of point-to-centroid distances
        distances = np.linalg.norm(points[:, None, :] - centroids[None, :, :], axis=2)
        new_assignments = np.argmin(distances, axis=1)
        if np.array_equal(new_assignments, assignments):
            break
        assignments = new_assignments

        for cluster in range(k):
            members = points[assignments == cluster]
            if len(members):
                centroids[cluster] = members.mean(axis=0)

    return assignments.tolist()


def stratified_sample(
    items: Sequence[T],
    assignments: Sequence[int],
    target: int,
    k: int,
) -> list[T]:
    """Take an even share of items from each cluster, capped at `target`."""
    if not items or target <= 0 or k <= 0:
        return []

    clusters: list[list[T]] = [[] for _ in range(k)]
    for item, cluster in zip(items, assignments, strict=True):
        clusters[cluster].append(item)

    per_cluster = max(1, math.ceil(target / k))
    sample: list[T] = []
    for members in clusters:
        for item in members[:per_cluster]:
            if len(sample) >= target:
                return sample
            sample.append(item)

    # Small clusters left slots unused; top up round-robin from the rest
    taken = [min(per_cluster, len(members)) for members in clusters]
    while len(sample) < target:
        added = False
        for cluster, members in enumerate(clusters):
            if len(sample) >= target:
                break
            if taken[cluster] < len(members):
                sample.append(members[taken[cluster]])
                taken[cluster] += 1
                added = True
        if not added:
            break
    return sample
