"""
GSEA (Gene Set Enrichment Analysis) for scdiff

Preranked GSEA: a weighted Kolmogorov-Smirnov running sum over a fixed
gene ranking, with significance from gene-set permutation. Each set's null
is built from random memberships of the same size drawn against the
ranking; the permutations are split into chunks that run on a thread pool
and are merged per set once every chunk has finished.
"""

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, asdict, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..config import GSEAConfig, SCORE_TYPES
from ..errors import EmptyRanking, NoSetsPassedFilter
from ..gene_set_utils import filter_gene_sets
from ..multitest import adjust_pvalues, normalize_method
from .ranking import RankedGeneList

logger = logging.getLogger("scdiff.Enrichment.GSEA")


@dataclass(frozen=True)
class EnrichmentResult:
    """GSEA result for a single gene set"""

    set_id: str
    es: float  # Enrichment Score
    nes: float  # Normalized Enrichment Score
    p_value: float
    adj_p_value: float
    set_size: int  # members present in the ranking
    leading_edge: Tuple[str, ...]
    rank_at_max: int  # 0-based position of the running-sum extreme

    def to_dict(self) -> Dict:
        d = asdict(self)
        d['leading_edge'] = list(self.leading_edge)
        d['overlap_ratio'] = f"{len(self.leading_edge)}/{self.set_size}"
        return d


@dataclass
class GSEAReport:
    """Results of a prerank run together with what was filtered out"""

    results: List[EnrichmentResult]
    excluded_sets: List[str] = field(default_factory=list)
    tested_sets: int = 0
    permutations: int = 0
    score_type: str = "std"
    p_adjust_method: str = "none"

    @property
    def excluded_count(self) -> int:
        return len(self.excluded_sets)


def _hit_fractions(hit_scores: np.ndarray, weight: float) -> np.ndarray:
    """Per-hit running-sum increments, summing to 1 along the last axis."""
    w = np.abs(hit_scores) ** weight
    total = w.sum(axis=-1, keepdims=True)
    # All-zero hit scores: fall back to equal steps
    zero = (total == 0).reshape(total.shape[:-1])
    if zero.any():
        w[zero] = 1.0
        total = w.sum(axis=-1, keepdims=True)
    return w / total


def _extremes(
    positions: np.ndarray,
    scores: np.ndarray,
    weight: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Running-sum values just after and just before each hit.

    Args:
        positions: Sorted hit positions, shape (..., k)
        scores: Full ranking scores, length n

    Returns:
        Tuple of (tops, bottoms), both shaped like ``positions``. The walk
        only rises at hits, so its maximum is among the tops and its minimum
        among the bottoms.
    """
    n = scores.size
    k = positions.shape[-1]
    miss_step = 1.0 / (n - k) if n > k else 0.0

    step = _hit_fractions(scores[positions], weight)
    cum = np.cumsum(step, axis=-1)
    misses_before = (positions - np.arange(k)) * miss_step
    tops = cum - misses_before
    bottoms = cum - step - misses_before
    return tops, bottoms


def _select_score(tops: np.ndarray, bottoms: np.ndarray, score_type: str) -> np.ndarray:
    max_dev = tops.max(axis=-1)
    min_dev = bottoms.min(axis=-1)
    if score_type == 'pos':
        return max_dev
    if score_type == 'neg':
        return min_dev
    return np.where(max_dev > -min_dev, max_dev, min_dev)


def running_sum(
    ranked: RankedGeneList,
    members: Iterable[str],
    weight: float = 1.0
) -> np.ndarray:
    """
    Full running-sum walk: the value after each position of the ranking.

    A member adds |score|^weight divided by the members' total; a non-member
    subtracts 1 / (n - set size).
    """
    positions = ranked.member_positions(members)
    n = len(ranked)
    k = positions.size
    if k == 0:
        raise ValueError("None of the set members are present in the ranking")

    steps = np.full(n, -(1.0 / (n - k)) if n > k else 0.0)
    steps[positions] = _hit_fractions(ranked.scores[positions], weight)
    return np.cumsum(steps)


def enrichment_score(
    ranked: RankedGeneList,
    members: Iterable[str],
    weight: float = 1.0,
    score_type: str = 'std'
) -> Tuple[float, int, Tuple[str, ...]]:
    """
    Raw enrichment score of one set.

    Returns:
        Tuple of (ES, rank_at_max, leading-edge genes)
    """
    if score_type not in SCORE_TYPES:
        raise ValueError(f"score_type must be one of {SCORE_TYPES}, got '{score_type}'")
    positions = ranked.member_positions(members)
    if positions.size == 0:
        raise ValueError("None of the set members are present in the ranking")

    tops, bottoms = _extremes(positions, ranked.scores, weight)
    es = float(_select_score(tops, bottoms, score_type))

    if es >= 0 and score_type != 'neg':
        i = int(np.argmax(tops))
        rank_at_max = int(positions[i])
        edge = positions[:i + 1]
    else:
        i = int(np.argmin(bottoms))
        rank_at_max = max(int(positions[i]) - 1, 0)
        edge = positions[i:]

    leading_edge = tuple(ranked.genes[p] for p in edge)
    return es, rank_at_max, leading_edge


def _null_chunk(
    set_id: str,
    chunk_idx: int,
    size: int,
    set_size: int,
    scores: np.ndarray,
    weight: float,
    score_type: str,
    seed_seq: np.random.SeedSequence
) -> Tuple[str, int, np.ndarray]:
    """Scores for ``size`` random memberships of ``set_size`` genes."""
    rng = np.random.default_rng(seed_seq)
    n = scores.size
    positions = np.stack([
        rng.choice(n, size=set_size, replace=False, shuffle=False)
        for _ in range(size)
    ])
    positions.sort(axis=1)
    tops, bottoms = _extremes(positions, scores, weight)
    return set_id, chunk_idx, _select_score(tops, bottoms, score_type)


def permutation_null(
    ranked: RankedGeneList,
    set_sizes: Mapping[str, int],
    permutations: int,
    weight: float = 1.0,
    score_type: str = 'std',
    seed: Optional[int] = None,
    max_workers: int = 4,
    chunk_size: int = 1000,
    progress_callback: Optional[Callable[[int, int], None]] = None
) -> Dict[str, np.ndarray]:
    """
    Empirical null enrichment scores for every gene set.

    Chunks of permutations run as independent tasks, each with its own
    random stream spawned from ``seed``; results depend on the seed and
    ``chunk_size`` but not on ``max_workers``.

    Args:
        ranked: Fixed ranking
        set_sizes: Gene set id -> number of members in the ranking
        permutations: Null samples per set
        progress_callback: Optional callback(completed_tasks, total_tasks)

    Returns:
        Gene set id -> array of exactly ``permutations`` null scores

    Raises:
        RuntimeError: If any set ends up with a different sample count
    """
    if permutations < 1:
        raise ValueError(f"permutations must be >= 1, got {permutations}")

    n_chunks = -(-permutations // chunk_size)
    chunk_sizes = [min(chunk_size, permutations - c * chunk_size) for c in range(n_chunks)]
    set_ids = list(set_sizes)
    seeds = np.random.SeedSequence(seed).spawn(len(set_ids) * n_chunks)
    scores = np.asarray(ranked.scores)

    tasks = []
    for s, set_id in enumerate(set_ids):
        for c, size in enumerate(chunk_sizes):
            tasks.append((set_id, c, size, set_sizes[set_id], seeds[s * n_chunks + c]))

    collected: Dict[str, Dict[int, np.ndarray]] = {set_id: {} for set_id in set_ids}
    total = len(tasks)
    completed = 0

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [
            executor.submit(_null_chunk, set_id, c, size, k, scores, weight, score_type, seq)
            for set_id, c, size, k, seq in tasks
        ]
        try:
            for future in as_completed(futures):
                set_id, c, values = future.result()
                collected[set_id][c] = values
                completed += 1
                if progress_callback:
                    progress_callback(completed, total)
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    nulls = {}
    for set_id in set_ids:
        chunks = collected[set_id]
        values = np.concatenate([chunks[c] for c in sorted(chunks)]) if chunks else np.empty(0)
        if values.size != permutations:
            raise RuntimeError(
                f"Null for '{set_id}' has {values.size} samples, expected {permutations}"
            )
        nulls[set_id] = values
    return nulls


def empirical_pvalue(es: float, null: np.ndarray, score_type: str = 'std') -> float:
    """
    Permutation p-value, never below 1 / (len(null) + 1).

    For 'std' the comparison is made within nulls of the same sign as ES.
    """
    if score_type == 'pos':
        return float((1 + np.sum(null >= es)) / (1 + null.size))
    if score_type == 'neg':
        return float((1 + np.sum(null <= es)) / (1 + null.size))

    if es >= 0:
        same = null[null >= 0]
        hits = np.sum(same >= es)
    else:
        same = null[null < 0]
        hits = np.sum(same <= es)
    return float(min(1.0, (1 + hits) / (1 + same.size)))


def normalized_score(es: float, null: np.ndarray, score_type: str = 'std') -> float:
    """ES divided by the mean absolute null score of the same sign."""
    reference = null
    if score_type == 'std':
        same = null[null >= 0] if es >= 0 else null[null < 0]
        if same.size > 0:
            reference = same
    scale = float(np.mean(np.abs(reference))) if reference.size else 0.0
    if scale == 0:
        return 0.0
    return es / scale


def run_gsea_prerank(
    ranked: Union[RankedGeneList, Mapping[str, float]],
    gene_sets: Mapping[str, Iterable[str]],
    score_type: Optional[str] = None,
    p_adjust_method: Optional[str] = None,
    permutations: Optional[int] = None,
    config: Optional[GSEAConfig] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None
) -> GSEAReport:
    """
    Run preranked GSEA.

    Args:
        ranked: RankedGeneList, or a gene -> score mapping
        gene_sets: Gene set id -> member genes
        score_type: 'std', 'pos' or 'neg' (config default if None)
        p_adjust_method: Correction across sets (config default, 'none', if None)
        permutations: Null samples per set (config default if None)
        config: GSEAConfig for size bounds, weight, seed and workers

    Returns:
        GSEAReport; results sorted by p-value, |NES| descending, then set id

    Raises:
        EmptyRanking: If the ranking has no genes
        ValueError: On an unknown score type or correction method
    """
    config = config or GSEAConfig()
    score_type = score_type or config.score_type
    p_adjust_method = p_adjust_method or config.p_adjust_method
    permutations = config.permutations if permutations is None else permutations

    if score_type not in SCORE_TYPES:
        raise ValueError(f"score_type must be one of {SCORE_TYPES}, got '{score_type}'")
    if permutations < 1:
        raise ValueError(f"permutations must be >= 1, got {permutations}")
    normalize_method(p_adjust_method)

    if not isinstance(ranked, RankedGeneList):
        if len(ranked) == 0:
            raise EmptyRanking("Empty gene ranking provided")
        ranked = RankedGeneList.from_mapping(ranked)

    kept, excluded = filter_gene_sets(
        gene_sets, universe=ranked.genes,
        min_size=config.min_size, max_size=config.max_size
    )
    report = GSEAReport(
        results=[],
        excluded_sets=excluded,
        tested_sets=len(kept),
        permutations=permutations,
        score_type=score_type,
        p_adjust_method=p_adjust_method,
    )

    if not kept:
        warnings.warn(
            NoSetsPassedFilter(
                f"All {len(excluded)} gene sets fall outside size bounds "
                f"[{config.min_size}, {config.max_size}]"
            ),
            stacklevel=2
        )
        logger.warning(f"GSEA: no gene sets passed the size filter ({len(excluded)} excluded)")
        return report

    logger.info(
        f"Running GSEA prerank: {len(ranked)} genes, {len(kept)} gene sets "
        f"({len(excluded)} excluded), {permutations} permutations, score_type={score_type}"
    )

    observed = {
        set_id: enrichment_score(ranked, members, config.gsea_weight, score_type)
        for set_id, members in kept.items()
    }
    nulls = permutation_null(
        ranked,
        {set_id: len(members) for set_id, members in kept.items()},
        permutations,
        weight=config.gsea_weight,
        score_type=score_type,
        seed=config.seed,
        max_workers=config.max_workers,
        chunk_size=config.chunk_size,
        progress_callback=progress_callback,
    )

    set_ids = list(kept)
    p_values = [empirical_pvalue(observed[s][0], nulls[s], score_type) for s in set_ids]
    adjusted = adjust_pvalues(p_values, method=p_adjust_method)

    results = []
    for set_id, p, q in zip(set_ids, p_values, adjusted):
        es, rank_at_max, leading_edge = observed[set_id]
        results.append(EnrichmentResult(
            set_id=set_id,
            es=es,
            nes=float(normalized_score(es, nulls[set_id], score_type)),
            p_value=p,
            adj_p_value=float(q),
            set_size=len(kept[set_id]),
            leading_edge=leading_edge,
            rank_at_max=rank_at_max,
        ))

    results.sort(key=lambda r: (r.p_value, -abs(r.nes), r.set_id))
    report.results = results

    logger.info(
        f"GSEA complete: {sum(r.nes > 0 for r in results)} positive, "
        f"{sum(r.nes < 0 for r in results)} negative, "
        f"{sum(r.adj_p_value < 0.05 for r in results)} with adjusted p < 0.05"
    )
    return report


def enrich(
    ranked: Union[RankedGeneList, Mapping[str, float]],
    sets: Mapping[str, Iterable[str]],
    score_type: Optional[str] = None,
    p_adjust_method: Optional[str] = None,
    permutations: Optional[int] = None,
    config: Optional[GSEAConfig] = None
) -> List[EnrichmentResult]:
    """Enrichment results only; see ``run_gsea_prerank``."""
    return run_gsea_prerank(
        ranked, sets,
        score_type=score_type,
        p_adjust_method=p_adjust_method,
        permutations=permutations,
        config=config
    ).results


def results_to_frame(results: List[EnrichmentResult]) -> pd.DataFrame:
    """Tabulate enrichment results; leading edge genes joined with ';'."""
    columns = ['set_id', 'es', 'nes', 'p_value', 'adj_p_value', 'set_size',
               'rank_at_max', 'leading_edge']
    if not results:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame([r.to_dict() for r in results])
    df['leading_edge'] = df['leading_edge'].apply(";".join)
    return df[columns]


def split_by_direction(
    results: List[EnrichmentResult],
    top_n: Optional[int] = None
) -> Tuple[List[EnrichmentResult], List[EnrichmentResult]]:
    """
    Separate results by NES sign.

    Returns:
        Tuple of (positively enriched, negatively enriched), strongest first
    """
    up = sorted([r for r in results if r.nes > 0], key=lambda x: -x.nes)
    down = sorted([r for r in results if r.nes < 0], key=lambda x: x.nes)
    if top_n is not None:
        up, down = up[:top_n], down[:top_n]
    return up, down
