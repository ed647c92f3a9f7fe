"""Data I/O helpers for tab-delimited search result files."""

import csv
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

import pandas as pd

from .topk import remove_prefix_and_suffix

logger = logging.getLogger(__name__)

# Default column names in MS-GF+ .tsv result files
SCAN_COLUMN = 'ScanNum'
CHARGE_COLUMN = 'Charge'
PEPTIDE_COLUMN = 'Peptide'
PROTEIN_COLUMN = 'Protein'
SCORE_COLUMN = 'SpecEValue'
PRECURSOR_MZ_COLUMN = 'Precursor'
ISOTOPE_ERROR_COLUMN = 'IsotopeError'

# Columns needed to merge result partitions
REQUIRED_MERGE_COLUMNS = [
    SCAN_COLUMN,
    CHARGE_COLUMN,
    PEPTIDE_COLUMN,
    PROTEIN_COLUMN,
    SCORE_COLUMN,
]


def find_column(available: set[str], *candidates: str) -> Optional[str]:
    """Find the first candidate present in ``available``.

    Each candidate is tried as given, then with spaces and underscores
    swapped, since exports are inconsistent about which one they use.

    Returns:
        Matching column name, or None

    """
    for name in candidates:
        for variant in (name, name.replace(' ', '_'), name.replace('_', ' ')):
            if variant in available:
                return variant
    return None


def split_fields(line: str) -> list[str]:
    """Split a data line into tab-delimited fields."""
    return line.rstrip('\r\n').split('\t')


def map_header_columns(
    header_line: str,
    required: list[str],
    filepath: Path,
) -> dict[str, int]:
    """Map required column names to 0-based positions in a header line.

    Args:
        header_line: First line of the file
        required: Column names that must be present
        filepath: Source file, used in error messages

    Returns:
        Dict of required column name -> index

    Raises:
        ValueError: If any required column is missing

    """
    header = split_fields(header_line)
    positions = {name: i for i, name in enumerate(header)}
    available = set(positions)

    column_map = {}
    missing = []
    for name in required:
        found = find_column(available, name)
        if found is None:
            missing.append(name)
        else:
            column_map[name] = positions[found]

    if missing:
        raise ValueError(
            f"Header {', '.join(missing)} not found in {Path(filepath).name}; "
            f"unable to process the file"
        )

    return column_map


def iter_lines(filepath: Path) -> Iterator[str]:
    """Yield non-blank lines of a text file, without line terminators."""
    with open(filepath, encoding='utf-8', newline='') as f:
        for line in f:
            line = line.rstrip('\r\n')
            if line.strip():
                yield line


def read_header_line(filepath: Path) -> Optional[str]:
    """Return the first non-blank line of a file, or None if there is none."""
    with open(filepath, encoding='utf-8', newline='') as f:
        for line in f:
            line = line.rstrip('\r\n')
            if line.strip():
                return line
    return None


def is_number(text: str) -> bool:
    """Return True if ``text`` parses as a floating point number."""
    try:
        float(text)
    except ValueError:
        return False
    return True


def read_filter_passing_peptides(
    results_path: Path,
    peptide_col: str = PEPTIDE_COLUMN,
) -> frozenset[str]:
    """Collect the flank-stripped peptides listed in a merged result file.

    Used when the peptide-to-protein maps are merged separately from the
    result partitions.

    Args:
        results_path: Merged tab-delimited result file
        peptide_col: Name of the peptide column

    Returns:
        Frozen set of stripped peptide sequences

    """
    results_path = Path(results_path)
    if not results_path.exists():
        raise FileNotFoundError(f"Merged results file not found: {results_path}")

    peptides = set()
    reader = pd.read_csv(
        results_path,
        sep='\t',
        usecols=[peptide_col],
        dtype=str,
        index_col=False,
        chunksize=100_000,
        keep_default_na=False,
        quoting=csv.QUOTE_NONE,
    )
    for chunk in reader:
        peptides.update(remove_prefix_and_suffix(p) for p in chunk[peptide_col] if p)

    logger.info(f"Read {len(peptides):,} distinct peptides from {results_path.name}")
    return frozenset(peptides)
