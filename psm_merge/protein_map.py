"""Merge peptide-to-protein map partitions.

Every partition of a split-database search comes with its own
``_PepToProtMap.txt`` listing, for each peptide, the proteins (within that
database slice) that contain it. The merged map must only list peptides
that survived :mod:`psm_merge.merge`, must keep every distinct
peptide/protein association and must not repeat one.

The filtered rows are spooled to an unsorted Parquet file, then
deduplicated and sorted by peptide with DuckDB, which spills to disk when
the data does not fit in the memory budget.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import duckdb
import pyarrow as pa
import pyarrow.parquet as pq

from .data_io import iter_lines
from .topk import remove_prefix_and_suffix

logger = logging.getLogger(__name__)

SPOOL_SCHEMA = pa.schema(
    [
        ("seq", pa.int64()),
        ("peptide", pa.string()),
        ("line", pa.string()),
    ]
)


@dataclass
class MapMergeResult:
    """Result of merging peptide-to-protein map partitions."""

    output_path: Path
    n_partitions: int
    n_partitions_missing: int
    n_lines_read: int
    n_lines_written: int
    n_duplicates_skipped: int
    warnings: list[str] = field(default_factory=list)


def _sql_path(path: Path) -> str:
    return str(path).replace("'", "''")


def sort_spooled_rows(
    spool_path: Path,
    sorted_path: Path,
    memory_mb: int = 1024,
) -> None:
    """Drop repeated rows and sort the rest by peptide.

    The first occurrence of a row (lowest ``seq``) is kept. Rows with equal
    peptides keep spool order.

    Args:
        spool_path: Parquet file with ``seq``, ``peptide`` and ``line`` columns
        sorted_path: Parquet file to create with the sorted ``line`` column
        memory_mb: DuckDB memory limit; larger inputs spill to a temp directory

    Raises:
        RuntimeError: If DuckDB fails to sort the file

    """
    temp_dir = sorted_path.parent / ".duckdb_temp"
    temp_dir.mkdir(exist_ok=True)

    conn = duckdb.connect()
    try:
        conn.execute(f"SET memory_limit='{memory_mb}MB'")
        conn.execute(f"SET temp_directory='{_sql_path(temp_dir)}'")
        conn.execute(f"""
            COPY (
                SELECT line FROM read_parquet('{_sql_path(spool_path)}')
                QUALIFY row_number() OVER (PARTITION BY line ORDER BY seq) = 1
                ORDER BY peptide, seq
            ) TO '{_sql_path(sorted_path)}' (FORMAT PARQUET)
        """)
    except duckdb.Error as e:
        raise RuntimeError(f"Error sorting peptide-to-protein map rows in {spool_path.name}: {e}") from e
    finally:
        conn.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


class PeptideProteinMapMerger:
    """Streams N peptide-to-protein map partitions into one sorted map."""

    def __init__(self, sort_memory_mb: int = 1024, batch_size: int = 50_000):
        self.sort_memory_mb = sort_memory_mb
        self.batch_size = batch_size

    def merge_maps(
        self,
        partition_paths: list[Path],
        filter_passing_peptides: frozenset[str] | set[str],
        output_path: Path,
    ) -> MapMergeResult:
        """Merge map partitions, keeping peptides that passed the result merge.

        Consecutive rows for the same peptide form a group; the filter
        decision is made once per group. A row is written the first time its
        peptide/protein association is seen, in whichever partition.

        Args:
            partition_paths: Map files, in partition order; missing files are skipped
            filter_passing_peptides: Flank-stripped peptides kept by the result merge
            output_path: Merged map to create

        Returns:
            MapMergeResult with counts

        Raises:
            ValueError: If none of the partitions exist
            RuntimeError: If sorting fails

        """
        partition_paths = [Path(p) for p in partition_paths]
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        result = MapMergeResult(
            output_path=output_path,
            n_partitions=len(partition_paths),
            n_partitions_missing=0,
            n_lines_read=0,
            n_lines_written=0,
            n_duplicates_skipped=0,
        )

        spool_path = output_path.with_name(output_path.stem + "_unsorted.parquet")
        sorted_path = output_path.with_name(output_path.stem + "_sorted.parquet")

        header_line = None
        last_peptide_full = None
        include_group = False
        seq = 0
        batch: dict[str, list] = {"seq": [], "peptide": [], "line": []}

        writer = pq.ParquetWriter(spool_path, SPOOL_SCHEMA)
        try:
            for path in partition_paths:
                if not path.exists():
                    message = f"Peptide to protein map file not found; cannot merge: {path}"
                    logger.warning(message)
                    result.warnings.append(message)
                    result.n_partitions_missing += 1
                    continue

                logger.debug(f"Caching data from {path}")

                for i, line in enumerate(iter_lines(path)):
                    result.n_lines_read += 1

                    if i == 0:
                        if header_line is None:
                            header_line = line
                        continue

                    tab = line.find("\t")
                    if tab <= 0:
                        continue

                    peptide_full = line[:tab]
                    if peptide_full != last_peptide_full:
                        last_peptide_full = peptide_full
                        include_group = remove_prefix_and_suffix(peptide_full) in filter_passing_peptides

                    if not include_group:
                        continue

                    batch["seq"].append(seq)
                    batch["peptide"].append(peptide_full)
                    batch["line"].append(line)
                    seq += 1

                    if len(batch["seq"]) >= self.batch_size:
                        writer.write_table(pa.Table.from_pydict(batch, schema=SPOOL_SCHEMA))
                        batch = {"seq": [], "peptide": [], "line": []}

            if batch["seq"]:
                writer.write_table(pa.Table.from_pydict(batch, schema=SPOOL_SCHEMA))
        finally:
            writer.close()

        try:
            if header_line is None:
                raise ValueError("No peptide to protein map files were found; nothing to merge")

            logger.info(
                f"Read {result.n_lines_read:,} lines from {len(partition_paths)} map files; "
                f"now sorting the {seq:,} merged rows"
            )

            sort_spooled_rows(spool_path, sorted_path, self.sort_memory_mb)

            with open(output_path, "w", encoding="utf-8", newline="\n") as out:
                out.write(header_line + "\n")
                for record_batch in pq.ParquetFile(sorted_path).iter_batches(columns=["line"]):
                    for line in record_batch.column(0).to_pylist():
                        out.write(line + "\n")
                        result.n_lines_written += 1
        finally:
            spool_path.unlink(missing_ok=True)
            sorted_path.unlink(missing_ok=True)

        result.n_duplicates_skipped = seq - result.n_lines_written

        if result.n_duplicates_skipped:
            logger.info(f"  Skipped {result.n_duplicates_skipped:,} duplicate peptide/protein rows")
        logger.info(f"  Wrote merged peptide to protein map: {output_path}")

        return result


def merge_peptide_protein_maps(
    partition_paths: list[Path],
    filter_passing_peptides: frozenset[str] | set[str],
    output_path: Path,
    sort_memory_mb: int = 1024,
) -> MapMergeResult:
    """Merge map partitions with a fresh :class:`PeptideProteinMapMerger`."""
    merger = PeptideProteinMapMerger(sort_memory_mb=sort_memory_mb)
    return merger.merge_maps(partition_paths, filter_passing_peptides, output_path)
