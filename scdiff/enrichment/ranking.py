"""
Ranked gene lists for rank-based enrichment.
"""

import logging
from typing import Dict, Iterator, List, Mapping, Sequence, Tuple

import numpy as np

from ..de_analysis import GeneStatistic
from ..errors import EmptyRanking, NonFiniteInput

logger = logging.getLogger("scdiff.Enrichment.Ranking")

_TINY = np.finfo(float).tiny


class RankedGeneList:
    """
    Genes ordered by a ranking score, highest first.

    Ties are broken by gene identifier so the order is fully deterministic.
    """

    def __init__(self, genes: Sequence[str], scores: Sequence[float]):
        genes = [str(g) for g in genes]
        scores = np.asarray(scores, dtype=float)

        if len(genes) == 0:
            raise EmptyRanking("Ranked gene list has no genes")
        if len(genes) != scores.size:
            raise ValueError(f"Got {len(genes)} genes but {scores.size} scores")
        if len(set(genes)) != len(genes):
            raise ValueError("Ranked gene list contains duplicate gene identifiers")
        if not np.all(np.isfinite(scores)):
            bad = [g for g, s in zip(genes, scores) if not np.isfinite(s)]
            raise NonFiniteInput(f"{len(bad)} genes have non-finite scores, e.g. {bad[:5]}")

        order = sorted(range(len(genes)), key=lambda i: (-scores[i], genes[i]))
        self._genes: Tuple[str, ...] = tuple(genes[i] for i in order)
        self._scores = scores[order]
        self._scores.setflags(write=False)
        self._positions = {g: i for i, g in enumerate(self._genes)}

    @classmethod
    def from_mapping(cls, ranking: Mapping[str, float]) -> "RankedGeneList":
        ranking = dict(ranking)
        return cls(list(ranking.keys()), list(ranking.values()))

    @classmethod
    def from_statistics(cls, results: Sequence[GeneStatistic], metric: str = 't') -> "RankedGeneList":
        """
        Build a ranking from DE output.

        Args:
            results: GeneStatistic entries
            metric: 't' (moderated t), 'log_fc', or 'signed_log10p'
                (sign of log_fc times -log10 p-value)
        """
        if not results:
            raise EmptyRanking("No DE results to rank")

        if metric == 't':
            scores = [r.t_stat for r in results]
        elif metric == 'log_fc':
            scores = [r.log_fc for r in results]
        elif metric == 'signed_log10p':
            scores = [
                float(np.sign(r.log_fc) * -np.log10(max(r.p_value, _TINY)))
                for r in results
            ]
        else:
            raise ValueError(f"Unknown ranking metric: '{metric}'")

        return cls([r.gene for r in results], scores)

    @property
    def genes(self) -> Tuple[str, ...]:
        return self._genes

    @property
    def scores(self) -> np.ndarray:
        return self._scores

    def position(self, gene: str) -> int:
        return self._positions[gene]

    def __contains__(self, gene) -> bool:
        return gene in self._positions

    def __len__(self) -> int:
        return len(self._genes)

    def __iter__(self) -> Iterator[Tuple[str, float]]:
        return iter(zip(self._genes, self._scores.tolist()))

    def member_positions(self, members) -> np.ndarray:
        """Sorted positions of the given genes that are present in the ranking."""
        pos = [self._positions[g] for g in set(members) if g in self._positions]
        return np.array(sorted(pos), dtype=np.int64)

    def to_dict(self) -> Dict[str, float]:
        return dict(zip(self._genes, self._scores.tolist()))

    def top(self, n: int = 10) -> List[Tuple[str, float]]:
        return list(zip(self._genes[:n], self._scores[:n].tolist()))
