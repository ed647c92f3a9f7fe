"""Command-line interface for psm-merge.

Recombines the results of a split-database (partitioned) MS-GF+ search:
merged PSMs, merged peptide-to-protein map and a mass error check.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml

from . import __version__
from .chunked_processing import interleave_files, split_file_round_robin
from .data_io import read_filter_passing_peptides
from .merge import MergeConfig, PartitionedResultMerger
from .protein_map import PeptideProteinMapMerger
from .search_params import load_search_engine_parameters
from .validation import MassErrorConfig, MassErrorResult, MassErrorValidator

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'columns': {
            'scan': 'ScanNum',
            'charge': 'Charge',
            'peptide': 'Peptide',
            'protein': 'Protein',
            'score': 'SpecEValue',
            'precursor_mz': 'Precursor',
            'isotope_error': 'IsotopeError',
        },
        'merge': {
            'keep_per_scan_charge': 2,
            'max_warnings': 10,
        },
        'protein_map': {
            'sort_memory_mb': 1024,
        },
        'chunking': {
            'max_size_mb': 200,
            'has_header': True,
        },
        'validation': {
            'error_threshold_percent': 5.0,
            'error_threshold_count': 25,
            'relaxed_tools': {'MaxQuant': 10.0},
            'ignore_errors': False,
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def merge_config_from(config: dict) -> MergeConfig:
    """Build a MergeConfig from the ``columns`` and ``merge`` sections."""
    columns = config['columns']
    return MergeConfig(
        scan_col=columns['scan'],
        charge_col=columns['charge'],
        peptide_col=columns['peptide'],
        protein_col=columns['protein'],
        score_col=columns['score'],
        keep_per_scan_charge=int(config['merge']['keep_per_scan_charge']),
        max_warnings=int(config['merge']['max_warnings']),
    )


def mass_error_config_from(config: dict) -> MassErrorConfig:
    """Build a MassErrorConfig from the ``columns`` and ``validation`` sections."""
    columns = config['columns']
    validation = config['validation']
    return MassErrorConfig(
        scan_col=columns['scan'],
        charge_col=columns['charge'],
        peptide_col=columns['peptide'],
        precursor_mz_col=columns['precursor_mz'],
        isotope_error_col=columns['isotope_error'],
        error_threshold_percent=float(validation['error_threshold_percent']),
        error_threshold_count=int(validation['error_threshold_count']),
        relaxed_tools={k: float(v) for k, v in (validation.get('relaxed_tools') or {}).items()},
        ignore_errors=bool(validation['ignore_errors']),
    )


def _report_verdict(result: MassErrorResult) -> int:
    if result.accepted:
        logger.info(f"Mass error validation passed: {result.message}")
        return 0
    logger.error(f"Mass error validation failed: {result.message}")
    return 1


def cmd_merge(args: argparse.Namespace) -> int:
    """Merge result partitions."""
    config = load_config(Path(args.config) if args.config else None)
    merger = PartitionedResultMerger(merge_config_from(config))

    result = merger.merge(
        [Path(p) for p in args.partitions],
        Path(args.output),
        keep_per_scan_charge=args.keep,
    )

    logger.info(f"Merged {result.n_partitions} partitions -> {result.output_path}")
    logger.info(f"  {result.n_psms_written:,} PSMs, {len(result.filter_passing_peptides):,} peptides")
    return 0


def cmd_merge_maps(args: argparse.Namespace) -> int:
    """Merge peptide-to-protein map partitions against a merged result file."""
    config = load_config(Path(args.config) if args.config else None)

    peptides = read_filter_passing_peptides(Path(args.results), config['columns']['peptide'])
    merger = PeptideProteinMapMerger(sort_memory_mb=int(config['protein_map']['sort_memory_mb']))
    result = merger.merge_maps([Path(p) for p in args.maps], peptides, Path(args.output))

    logger.info(f"Merged {result.n_partitions} maps -> {result.output_path}")
    logger.info(f"  {result.n_lines_written:,} peptide/protein rows")
    return 0


def cmd_split(args: argparse.Namespace) -> int:
    """Split a large file into round-robin parts."""
    config = load_config(Path(args.config) if args.config else None)
    max_size_mb = args.max_size_mb if args.max_size_mb is not None else config['chunking']['max_size_mb']
    has_header = config['chunking']['has_header'] and not args.no_header

    parts = split_file_round_robin(Path(args.file), int(max_size_mb * 1024 * 1024), has_header)

    if len(parts) == 1:
        logger.info(f"{Path(args.file).name} is under {max_size_mb} MB; not split")
    for part in parts:
        print(part)
    return 0


def cmd_interleave(args: argparse.Namespace) -> int:
    """Interleave part files back into one file."""
    config = load_config(Path(args.config) if args.config else None)
    result = interleave_files(
        [Path(p) for p in args.parts],
        Path(args.output),
        has_header=config['chunking']['has_header'] and not args.no_header,
    )
    logger.info(f"Interleaved {result.n_parts} parts ({result.n_lines:,} lines) -> {result.output_path}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate the mass errors of a merged result file."""
    config = load_config(Path(args.config) if args.config else None)
    validator = MassErrorValidator(mass_error_config_from(config))

    result = validator.validate(
        Path(args.results),
        Path(args.params) if args.params else None,
        tool_name=args.tool_name,
    )
    return _report_verdict(result)


def generate_pipeline_metadata(
    config: dict,
    input_files: dict[str, list[str]],
    counts: dict,
    validation: MassErrorResult | None,
    method_log: list[str],
    warnings: list[str],
) -> dict:
    """Generate pipeline metadata JSON for reproducibility and provenance.

    Args:
        config: Pipeline configuration dictionary
        input_files: Input file paths by kind
        counts: Summary counts from each stage
        validation: Mass error verdict, if validation ran
        method_log: List of processing steps performed
        warnings: Warnings collected across stages

    Returns:
        Dictionary with complete pipeline metadata

    """
    validation_summary = {}
    if validation is not None:
        validation_summary = {
            'accepted': validation.accepted,
            'message': validation.message,
            'psm_count': validation.psm_count,
            'error_count': validation.error_count,
            'percent_invalid': validation.percent_invalid,
            'tolerance_da': validation.tolerance_da,
            'threshold_percent': validation.threshold_percent,
            'examples': validation.examples,
        }

    return {
        'pipeline_version': __version__,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'processing_parameters': config,
        'counts': counts,
        'validation': validation_summary,
        'method_log': method_log,
        'warnings': warnings,
    }


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full recombination pipeline.

    Pipeline stages:
    1. Merge result partitions, keeping the top peptides per scan/charge
    2. Merge peptide-to-protein maps (if given) against the surviving peptides
    3. Validate mass errors of the merged results
    4. Write metadata.json
    """
    config = load_config(Path(args.config) if args.config else None)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    dataset = args.dataset

    method_log = []
    warnings: list[str] = []
    counts = {}

    # Stage 1: merge result partitions
    merged_path = output_dir / f"{dataset}.tsv"
    merger = PartitionedResultMerger(merge_config_from(config))
    merge_result = merger.merge([Path(p) for p in args.input], merged_path)
    warnings.extend(merge_result.warnings)
    counts['merge'] = {
        'n_partitions': merge_result.n_partitions,
        'n_lines_read': merge_result.n_lines_read,
        'n_scan_charge': merge_result.n_scan_charge,
        'n_psms_written': merge_result.n_psms_written,
        'n_rows_skipped': merge_result.n_rows_skipped,
        'n_peptides': len(merge_result.filter_passing_peptides),
    }
    method_log.append(
        f"Merged {merge_result.n_partitions} result partitions, keeping "
        f"{config['merge']['keep_per_scan_charge']} peptide(s) per scan/charge"
    )

    # Stage 2: merge peptide-to-protein maps
    if args.maps:
        map_path = output_dir / f"{dataset}_PepToProtMap.txt"
        map_merger = PeptideProteinMapMerger(sort_memory_mb=int(config['protein_map']['sort_memory_mb']))
        map_result = map_merger.merge_maps(
            [Path(p) for p in args.maps],
            merge_result.filter_passing_peptides,
            map_path,
        )
        warnings.extend(map_result.warnings)
        counts['protein_map'] = {
            'n_partitions': map_result.n_partitions,
            'n_partitions_missing': map_result.n_partitions_missing,
            'n_lines_written': map_result.n_lines_written,
            'n_duplicates_skipped': map_result.n_duplicates_skipped,
        }
        method_log.append(f"Merged {map_result.n_partitions} peptide-to-protein maps")

    # Stage 3: mass error validation
    params = load_search_engine_parameters(Path(args.params) if args.params else None)
    validator = MassErrorValidator(mass_error_config_from(config))
    validation = validator.validate(merged_path, tool_name=args.tool_name, params=params)
    warnings.extend(validation.warnings)
    method_log.append(f"Validated mass errors: {validation.message}")

    # Stage 4: provenance
    input_files = {'partitions': [str(p) for p in args.input]}
    if args.maps:
        input_files['maps'] = [str(p) for p in args.maps]
    if args.params:
        input_files['params'] = [str(args.params)]

    metadata = generate_pipeline_metadata(
        config=config,
        input_files=input_files,
        counts=counts,
        validation=validation,
        method_log=method_log,
        warnings=warnings,
    )

    metadata_output = output_dir / "metadata.json"
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")

    logger.info("=" * 60)
    logger.info("psm-merge pipeline complete")
    logger.info("=" * 60)
    for step in method_log:
        logger.info(f"  {step}")
    logger.info(f"Output directory: {output_dir}")

    return _report_verdict(validation)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='psm-merge',
        description='psm-merge: recombine split-database search results\n\n'
                    'Merges result partitions, merges peptide-to-protein maps and\n'
                    'validates precursor mass errors.\n\n'
                    'Primary usage:\n'
                    '  psm-merge run -i part1.tsv part2.tsv -m map1.txt map2.txt -p params.txt -o out/',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Run command (primary) - executes full pipeline
    run_parser = subparsers.add_parser(
        'run',
        help='Merge partitions and maps, then validate (recommended)',
        description='Merge result partitions, merge peptide-to-protein maps and validate '
                    'mass errors. Exit code 1 if validation rejects the results.'
    )
    run_parser.add_argument('-i', '--input', nargs='+', required=True,
                           help='Result partition files, in partition order')
    run_parser.add_argument('-m', '--maps', nargs='+', help='Peptide-to-protein map files')
    run_parser.add_argument('-p', '--params', help='Search engine parameter file')
    run_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    run_parser.add_argument('-n', '--dataset', default='merged', help='Base name for output files')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('--tool-name', default='', help='Search tool name')

    merge_parser = subparsers.add_parser('merge', help='Merge result partitions only')
    merge_parser.add_argument('partitions', nargs='+', help='Result partition files')
    merge_parser.add_argument('-o', '--output', required=True, help='Merged output file')
    merge_parser.add_argument('-k', '--keep', type=int, help='Peptides to keep per scan/charge')
    merge_parser.add_argument('-c', '--config', help='Configuration YAML file')

    maps_parser = subparsers.add_parser('merge-maps', help='Merge peptide-to-protein maps only')
    maps_parser.add_argument('maps', nargs='+', help='Peptide-to-protein map files')
    maps_parser.add_argument('--results', required=True, help='Merged result file')
    maps_parser.add_argument('-o', '--output', required=True, help='Merged map file')
    maps_parser.add_argument('-c', '--config', help='Configuration YAML file')

    split_parser = subparsers.add_parser('split', help='Split a large file into round-robin parts')
    split_parser.add_argument('file', help='File to split')
    split_parser.add_argument('--max-size-mb', type=float, help='Maximum part size in MB (default 200)')
    split_parser.add_argument('--no-header', action='store_true', help='File has no header line')
    split_parser.add_argument('-c', '--config', help='Configuration YAML file')

    inter_parser = subparsers.add_parser('interleave', help='Interleave part files into one file')
    inter_parser.add_argument('parts', nargs='+', help='Part files, in part order')
    inter_parser.add_argument('-o', '--output', required=True, help='Combined output file')
    inter_parser.add_argument('--no-header', action='store_true', help='Parts have no header line')
    inter_parser.add_argument('-c', '--config', help='Configuration YAML file')

    val_parser = subparsers.add_parser('validate', help='Validate precursor mass errors')
    val_parser.add_argument('results', help='Merged result file')
    val_parser.add_argument('-p', '--params', help='Search engine parameter file')
    val_parser.add_argument('--tool-name', default='', help='Search tool name')
    val_parser.add_argument('-c', '--config', help='Configuration YAML file')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    commands = {
        'run': cmd_run,
        'merge': cmd_merge,
        'merge-maps': cmd_merge_maps,
        'split': cmd_split,
        'interleave': cmd_interleave,
        'validate': cmd_validate,
    }

    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        return command(args)
    except (FileNotFoundError, ValueError, RuntimeError) as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
