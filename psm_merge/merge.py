"""Recombine search result partitions from a split-database search.

Each partition holds the PSMs found against one slice of the protein
database. The partitions are streamed in order, every row is routed into
the :class:`~psm_merge.topk.ScanChargeTopK` for its (scan, charge), and
the survivors are written to a single file ordered by best score.

Only the retained PSMs are held in memory; the raw rows are written back
verbatim so the merged file has exactly the schema of the inputs.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

from .data_io import (
    CHARGE_COLUMN,
    PEPTIDE_COLUMN,
    PROTEIN_COLUMN,
    SCAN_COLUMN,
    SCORE_COLUMN,
    iter_lines,
    map_header_columns,
    split_fields,
)
from .topk import PSMInfo, ScanChargeTopK

logger = logging.getLogger(__name__)


@dataclass
class MergeConfig:
    """Configuration for merging result partitions."""

    # Column names (MS-GF+ .tsv names as defaults)
    scan_col: str = SCAN_COLUMN
    charge_col: str = CHARGE_COLUMN
    peptide_col: str = PEPTIDE_COLUMN
    protein_col: str = PROTEIN_COLUMN
    score_col: str = SCORE_COLUMN

    keep_per_scan_charge: int = 2  # Distinct peptides to keep per scan/charge
    max_warnings: int = 10  # Malformed rows to log before going quiet

    @property
    def required_columns(self) -> list[str]:
        return [
            self.scan_col,
            self.charge_col,
            self.peptide_col,
            self.protein_col,
            self.score_col,
        ]


@dataclass
class MergeResult:
    """Result of merging result partitions."""

    output_path: Path
    filter_passing_peptides: frozenset[str]
    n_partitions: int
    n_lines_read: int
    n_scan_charge: int
    n_psms_written: int
    n_rows_skipped: int = 0
    warnings: list[str] = field(default_factory=list)


class PartitionedResultMerger:
    """Streams N result partitions into one deduplicated, score-sorted file."""

    def __init__(self, config: MergeConfig | None = None):
        self.config = config or MergeConfig()
        self.warnings_logged = 0

    def _warn_malformed(self, message: str, result_warnings: list[str]) -> None:
        """Log a malformed-row warning, going quiet after ``max_warnings``."""
        if self.warnings_logged >= self.config.max_warnings:
            return
        logger.warning(message)
        result_warnings.append(message)
        self.warnings_logged += 1
        if self.warnings_logged >= self.config.max_warnings:
            logger.warning("Additional warnings will not be logged")

    def merge(
        self,
        partition_paths: list[Path],
        output_path: Path,
        keep_per_scan_charge: int | None = None,
    ) -> MergeResult:
        """Merge result partitions, keeping the top hits per scan/charge.

        Args:
            partition_paths: Partition files, in partition order
            output_path: Merged file to create
            keep_per_scan_charge: Distinct peptides to keep per scan/charge
                (defaults to the configured value)

        Returns:
            MergeResult with the output path and the set of filter-passing peptides

        Raises:
            FileNotFoundError: If a partition file does not exist
            ValueError: If no partitions are given, a required column is
                missing, or a later partition has a different header

        """
        config = self.config
        keep = keep_per_scan_charge if keep_per_scan_charge is not None else config.keep_per_scan_charge
        partition_paths = [Path(p) for p in partition_paths]
        output_path = Path(output_path)

        if not partition_paths:
            raise ValueError("No result partitions to merge")

        for path in partition_paths:
            if not path.exists():
                raise FileNotFoundError(f"Result partition not found; unable to merge: {path}")

        self.warnings_logged = 0
        warnings: list[str] = []

        logger.info(f"Merging {len(partition_paths)} result partitions -> {output_path}")
        logger.info(f"  Keeping {keep} peptide(s) per scan/charge")

        header_line = None
        header_fields = None
        column_map: dict[str, int] = {}
        hits: dict[tuple[int, int], ScanChargeTopK] = {}
        total_lines = 0
        skipped = 0

        for path in partition_paths:
            logger.debug(f"Caching data from {path}")
            lines = iter_lines(path)

            first = next(lines, None)
            if first is None:
                message = f"Result partition is empty: {path.name}"
                logger.warning(message)
                warnings.append(message)
                continue
            total_lines += 1

            if header_line is None:
                column_map = map_header_columns(first, config.required_columns, path)
                header_line = first
                header_fields = split_fields(first)
            elif split_fields(first) != header_fields:
                raise ValueError(
                    f"Header in {path.name} does not match the header of the first partition; "
                    f"unable to merge"
                )

            scan_idx = column_map[config.scan_col]
            charge_idx = column_map[config.charge_col]
            peptide_idx = column_map[config.peptide_col]
            protein_idx = column_map[config.protein_col]
            score_idx = column_map[config.score_col]
            n_required = max(column_map.values()) + 1

            for line in lines:
                total_lines += 1
                fields = split_fields(line)

                if len(fields) < n_required:
                    skipped += 1
                    self._warn_malformed(
                        f"Too few columns ({len(fields)}) in {path.name}: {line}", warnings
                    )
                    continue

                try:
                    scan = int(fields[scan_idx])
                    charge = int(fields[charge_idx])
                except ValueError:
                    skipped += 1
                    self._warn_malformed(
                        f"Scan or charge was not an integer in {path.name}: {line}", warnings
                    )
                    continue

                score_text = fields[score_idx]
                try:
                    score = float(score_text)
                    if math.isnan(score):
                        raise ValueError(score_text)
                except ValueError:
                    skipped += 1
                    self._warn_malformed(
                        f"{config.score_col} was not numeric: {score_text} in {line}", warnings
                    )
                    continue

                key = (scan, charge)
                hits_for_scan = hits.get(key)
                if hits_for_scan is None:
                    hits_for_scan = ScanChargeTopK(scan, charge, keep)
                    hits[key] = hits_for_scan

                hits_for_scan.insert(
                    PSMInfo(peptide=fields[peptide_idx], score=score, data_line=line),
                    fields[protein_idx],
                )

        if header_line is None:
            raise ValueError("All result partitions are empty; nothing to merge")

        logger.debug(f"Sorting results for {len(hits):,} scan/charge combos")

        # sorted() is stable, so groups with equal best scores keep first-seen order
        ordered = sorted(hits.values(), key=lambda h: h.best_score)

        filter_passing = set()
        psms_written = 0
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8', newline='\n') as writer:
            writer.write(header_line + '\n')
            for hits_for_scan in ordered:
                for psm in hits_for_scan.psms:
                    writer.write(psm.data_line + '\n')
                    filter_passing.add(psm.peptide)
                    psms_written += 1

        logger.info(
            f"  Read {total_lines:,} lines from {len(partition_paths)} partitions; "
            f"wrote {psms_written:,} PSMs for {len(hits):,} scan/charge combos"
        )
        if skipped:
            logger.info(f"  Skipped {skipped:,} malformed rows")

        return MergeResult(
            output_path=output_path,
            filter_passing_peptides=frozenset(filter_passing),
            n_partitions=len(partition_paths),
            n_lines_read=total_lines,
            n_scan_charge=len(hits),
            n_psms_written=psms_written,
            n_rows_skipped=skipped,
            warnings=warnings,
        )


def merge_result_partitions(
    partition_paths: list[Path],
    output_path: Path,
    keep_per_scan_charge: int | None = None,
    config: MergeConfig | None = None,
) -> MergeResult:
    """Merge result partitions with a fresh :class:`PartitionedResultMerger`."""
    merger = PartitionedResultMerger(config)
    return merger.merge(partition_paths, output_path, keep_per_scan_charge)
