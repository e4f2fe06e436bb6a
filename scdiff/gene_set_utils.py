"""
Gene set collections for scdiff
GMT reading/writing, size filtering against a ranked universe, and
download of Enrichr libraries (GO, KEGG, ...) through gseapy.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import gseapy as gp

logger = logging.getLogger("scdiff.GeneSets")


def load_gmt(file_path: str) -> Dict[str, List[str]]:
    """
    Load gene sets from a GMT (Gene Matrix Transposed) file.

    GMT lines are tab-separated:
    <gene_set_name> <description> <gene1> <gene2> ... <geneN>

    Duplicate set names are merged; duplicate genes within a set are
    dropped, keeping first-seen order.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is not UTF-8 text
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"GMT file not found: {file_path}")

    gene_sets: Dict[str, List[str]] = {}
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            for line_num, line in enumerate(f, 1):
                line = line.rstrip('\r\n')
                if not line.strip() or line.startswith('#'):
                    continue

                parts = line.split('\t')
                if len(parts) < 3:
                    logger.warning(
                        f"Line {line_num}: expected name, description and genes, "
                        f"got {len(parts)} fields. Skipping."
                    )
                    continue

                name = parts[0].strip()
                genes = [g.strip() for g in parts[2:] if g.strip()]
                if not genes:
                    logger.warning(f"Line {line_num}: gene set '{name}' has no genes. Skipping.")
                    continue

                if name in gene_sets:
                    logger.warning(f"Line {line_num}: duplicate gene set '{name}', merging genes")
                    genes = gene_sets[name] + genes
                gene_sets[name] = list(dict.fromkeys(genes))
    except UnicodeDecodeError as e:
        raise ValueError(f"Invalid file encoding. Expected UTF-8: {e}")

    logger.info(f"Loaded {len(gene_sets)} gene sets from {file_path}")
    return gene_sets


def save_gmt(gene_sets: Dict[str, List[str]], file_path: str, description: str = "") -> None:
    """Write gene sets in GMT format, creating parent directories."""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    with open(file_path, 'w', encoding='utf-8') as f:
        for name, genes in gene_sets.items():
            f.write("\t".join([name, description] + list(genes)) + "\n")

    logger.info(f"Saved {len(gene_sets)} gene sets to {file_path}")


def filter_gene_sets(
    gene_sets: Dict[str, Iterable[str]],
    universe: Optional[Iterable[str]] = None,
    min_size: int = 10,
    max_size: int = 500
) -> Tuple[Dict[str, List[str]], List[str]]:
    """
    Restrict gene sets to a universe and filter them by size.

    Args:
        gene_sets: Gene set name -> member genes
        universe: Genes that can be tested (e.g. the ranked list). Members
            outside it are dropped before sizing. None keeps all members.
        min_size: Smallest set size kept (inclusive)
        max_size: Largest set size kept (inclusive)

    Returns:
        Tuple of (kept sets with deduplicated members, names of excluded sets)
    """
    universe_set = set(universe) if universe is not None else None
    kept: Dict[str, List[str]] = {}
    excluded: List[str] = []

    for name, genes in gene_sets.items():
        members = list(dict.fromkeys(genes))
        if universe_set is not None:
            members = [g for g in members if g in universe_set]

        if min_size <= len(members) <= max_size:
            kept[name] = members
        else:
            excluded.append(name)

    logger.info(
        f"Gene set filter [{min_size}, {max_size}]: {len(kept)}/{len(gene_sets)} kept, "
        f"{len(excluded)} excluded"
    )
    return kept, excluded


def get_gene_set_stats(gene_sets: Dict[str, List[str]]) -> Dict[str, float]:
    """Summary counts: total_sets, total_genes, unique_genes, avg/min/max size."""
    if not gene_sets:
        return {
            "total_sets": 0,
            "total_genes": 0,
            "unique_genes": 0,
            "avg_size": 0,
            "min_size": 0,
            "max_size": 0
        }

    sizes = [len(genes) for genes in gene_sets.values()]
    all_genes = set()
    for genes in gene_sets.values():
        all_genes.update(genes)

    return {
        "total_sets": len(gene_sets),
        "total_genes": sum(sizes),
        "unique_genes": len(all_genes),
        "avg_size": sum(sizes) / len(sizes),
        "min_size": min(sizes),
        "max_size": max(sizes)
    }


def merge_gene_sets(gene_sets_list: List[Dict[str, List[str]]]) -> Dict[str, List[str]]:
    """Merge collections; sets sharing a name are unioned."""
    merged: Dict[str, List[str]] = {}
    for gene_sets in gene_sets_list:
        for name, genes in gene_sets.items():
            merged[name] = list(dict.fromkeys(merged.get(name, []) + list(genes)))
    return merged


def fetch_library(
    name: str,
    organism: str = 'Human',
    cache_dir: Optional[Path] = None
) -> Dict[str, List[str]]:
    """
    Download an Enrichr gene set library (e.g. 'GO_Biological_Process_2023')
    with gseapy, caching it as a GMT file.

    Args:
        name: Enrichr library name
        organism: 'Human', 'Mouse', 'Yeast', 'Fly', 'Fish' or 'Worm'
        cache_dir: Directory for cached GMT files (default ~/.scdiff/gene_sets)

    Returns:
        Gene set name -> member genes
    """
    cache_dir = Path(cache_dir) if cache_dir else Path.home() / '.scdiff' / 'gene_sets'
    cache_file = cache_dir / f"{name}_{organism.lower()}.gmt"

    if cache_file.exists():
        logger.info(f"Using cached gene set library {cache_file}")
        return load_gmt(str(cache_file))

    logger.info(f"Downloading {name} ({organism}) via gseapy")
    gene_sets = gp.get_library(name=name, organism=organism)
    if not gene_sets:
        raise RuntimeError(f"gseapy returned no gene sets for library '{name}'")

    save_gmt(gene_sets, str(cache_file), description=name)
    return {k: list(v) for k, v in gene_sets.items()}
