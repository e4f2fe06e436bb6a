"""
Over-Representation Analysis (ORA) for scdiff

GO-style enrichment of a gene list (typically the significant DE genes)
against gene sets, using the hypergeometric upper tail or a one-sided
Fisher's exact test, with multiple testing correction.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import warnings

import pandas as pd
from scipy.stats import fisher_exact, hypergeom

from ..config import ORAConfig
from ..gene_set_utils import filter_gene_sets
from ..multitest import adjust_pvalues

logger = logging.getLogger("scdiff.Enrichment.ORA")


@dataclass(frozen=True)
class ORAResult:
    """Result from ORA for a single gene set"""

    set_id: str

    p_value: float
    adj_p_value: float
    odds_ratio: float

    hit_genes: Tuple[str, ...]  # query genes in the set
    set_size: int  # set members inside the universe
    query_size: int  # query genes inside the universe
    background_size: int

    gene_ratio: str  # e.g. "5/120"
    bg_ratio: str  # e.g. "40/15000"

    def to_dict(self) -> Dict:
        d = asdict(self)
        d['hit_genes'] = list(self.hit_genes)
        return d


def fisher_test(
    hit_in_set: int,
    hit_not_in_set: int,
    set_not_hit: int,
    background_not_hit: int
) -> Tuple[float, float]:
    """
    One-sided Fisher's exact test for enrichment.

    Contingency table:
                    | In Set | Not in Set |
    Query           |   a    |     b      |
    Not Query       |   c    |     d      |

    Returns:
        Tuple of (odds_ratio, p_value)
    """
    table = [[hit_in_set, hit_not_in_set],
             [set_not_hit, background_not_hit]]

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        odds_ratio, p_value = fisher_exact(table, alternative='greater')

    return float(odds_ratio), float(p_value)


def hypergeometric_test(
    hit_in_set: int,
    set_size: int,
    query_size: int,
    background_size: int
) -> float:
    """
    P(X >= k) for X ~ Hypergeometric(M=background, n=set size, N=query size).
    """
    return float(hypergeom.sf(hit_in_set - 1, background_size, set_size, query_size))


def run_ora(
    gene_list: Iterable[str],
    gene_sets: Mapping[str, Iterable[str]],
    universe: Optional[Iterable[str]] = None,
    config: Optional[ORAConfig] = None
) -> List[ORAResult]:
    """
    Run Over-Representation Analysis.

    Args:
        gene_list: Query genes (e.g. significant DE genes)
        gene_sets: Gene set id -> member genes
        universe: Background genes (e.g. every gene tested for DE). Defaults
            to the union of all gene sets.
        config: ORAConfig (cutoff, correction, size bounds, test)

    Returns:
        ORAResult list with adjusted p <= p_cutoff, sorted by p-value
    """
    config = config or ORAConfig()

    if universe is None:
        universe_set = set()
        for genes in gene_sets.values():
            universe_set.update(genes)
    else:
        universe_set = set(universe)

    query = set(gene_list) & universe_set
    background_size = len(universe_set)

    kept, excluded = filter_gene_sets(
        gene_sets, universe=universe_set,
        min_size=config.min_size, max_size=config.max_size
    )

    logger.info(
        f"Running ORA: {len(query)} query genes, {len(kept)} gene sets "
        f"({len(excluded)} excluded), background={background_size}"
    )

    if not query or not kept:
        return []

    rows = []
    for set_id, members in kept.items():
        member_set = set(members)
        hits = query & member_set
        if not hits:
            continue

        a = len(hits)
        b = len(query) - a
        c = len(member_set) - a
        d = background_size - a - b - c

        if config.use_fisher:
            odds_ratio, p_value = fisher_test(a, b, c, d)
        else:
            p_value = hypergeometric_test(a, len(member_set), len(query), background_size)
            odds_ratio = (a * d) / (b * c) if b * c > 0 else float('inf')

        rows.append((set_id, p_value, odds_ratio, hits, len(member_set)))

    if not rows:
        return []

    adjusted = adjust_pvalues([r[1] for r in rows], method=config.p_adjust_method)

    results = []
    for (set_id, p_value, odds_ratio, hits, size), q in zip(rows, adjusted):
        if q > config.p_cutoff:
            continue
        results.append(ORAResult(
            set_id=set_id,
            p_value=p_value,
            adj_p_value=float(q),
            odds_ratio=odds_ratio,
            hit_genes=tuple(sorted(hits)),
            set_size=size,
            query_size=len(query),
            background_size=background_size,
            gene_ratio=f"{len(hits)}/{len(query)}",
            bg_ratio=f"{size}/{background_size}",
        ))

    results.sort(key=lambda r: (r.p_value, r.set_id))
    logger.info(f"ORA complete: {len(results)}/{len(rows)} gene sets pass p_cutoff")
    return results


def results_to_frame(results: List[ORAResult]) -> pd.DataFrame:
    columns = ['set_id', 'p_value', 'adj_p_value', 'odds_ratio', 'gene_ratio',
               'bg_ratio', 'hit_genes']
    if not results:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame([r.to_dict() for r in results])
    df['hit_genes'] = df['hit_genes'].apply("/".join)
    return df[columns]
