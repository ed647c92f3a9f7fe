"""
psm-merge: recombination of split-database search results

Post-processing for peptide-spectrum matches from a search engine run
against N slices of a protein database: merges the N result files keeping
the best peptides per scan/charge, merges the peptide-to-protein maps,
and validates precursor mass errors of the merged result.
"""

__version__ = "0.1.0"

from .topk import (
    PSMInfo,
    ScanChargeTopK,
    remove_prefix_and_suffix,
)
from .merge import (
    MergeConfig,
    MergeResult,
    PartitionedResultMerger,
    merge_result_partitions,
)
from .protein_map import (
    MapMergeResult,
    PeptideProteinMapMerger,
    merge_peptide_protein_maps,
)
from .chunked_processing import (
    split_file_round_robin,
    interleave_files,
    process_in_parts,
)
from .search_params import (
    SearchEngineParameters,
    load_search_engine_parameters,
)
from .masses import (
    compute_peptide_mass,
    precursor_neutral_mass,
)
from .validation import (
    MassErrorConfig,
    MassErrorResult,
    MassErrorValidator,
    LargestErrorsTable,
    assess_mass_errors,
    validate_mass_errors,
)
