"""
Mass error validation for merged search results.

Recomputes each PSM's precursor mass discrepancy and decides whether the
batch looks sane. A handful of outliers is normal; a large fraction
usually means the wrong parameter file, a bad modification definition, or
a precursor m/z reporting problem upstream.

Tolerance rules:
- Effective tolerance is the declared precursor tolerance, but never below 6 Da,
  widened by 1 Da per charge above 1
- High-resolution searches (declared tolerance < 0.75 Da) that report an
  isotope error are held to ``0.2 + mass/50000`` after subtracting the
  isotope error
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from .data_io import (
    CHARGE_COLUMN,
    ISOTOPE_ERROR_COLUMN,
    PEPTIDE_COLUMN,
    PRECURSOR_MZ_COLUMN,
    SCAN_COLUMN,
    find_column,
    map_header_columns,
    read_header_line,
)
from .masses import PROTON_MASS, compute_peptide_mass, precursor_neutral_mass
from .search_params import SearchEngineParameters, load_search_engine_parameters

logger = logging.getLogger(__name__)

# Peptide masses are recomputed for every row; sequences repeat heavily
_peptide_mass = lru_cache(maxsize=200_000)(compute_peptide_mass)


@dataclass
class MassErrorConfig:
    """Configuration for mass error validation."""

    # Column names (MS-GF+ .tsv names as defaults)
    scan_col: str = SCAN_COLUMN
    charge_col: str = CHARGE_COLUMN
    peptide_col: str = PEPTIDE_COLUMN
    precursor_mz_col: str = PRECURSOR_MZ_COLUMN
    isotope_error_col: str = ISOTOPE_ERROR_COLUMN

    # Verdict thresholds; either one alone is enough to accept
    error_threshold_percent: float = 5.0
    error_threshold_count: int = 25

    # Tool name prefix -> widened percent threshold
    relaxed_tools: dict[str, float] = field(default_factory=lambda: {'MaxQuant': 10.0})

    ignore_errors: bool = False  # Accept a failing validation with a warning

    tolerance_floor_da: float = 6.0
    high_res_tolerance_da: float = 0.75
    largest_errors_capacity: int = 100
    chunksize: int = 100_000

    def threshold_percent_for(self, tool_name: str = '') -> float:
        """Percent threshold for a search tool, honouring relaxed tools."""
        for prefix, percent in self.relaxed_tools.items():
            if tool_name and tool_name.startswith(prefix):
                return percent
        return self.error_threshold_percent


@dataclass(frozen=True)
class MassErrorRecord:
    """A PSM whose mass error exceeded its tolerance."""

    scan: int
    charge: int
    peptide: str
    precursor_neutral_mass: float
    computed_mass: float
    mass_error: float
    tolerance: float

    @property
    def description(self) -> str:
        return f"Scan={self.scan}, charge={self.charge}, peptide={self.peptide}"


class LargestErrorsTable:
    """The mass errors of greatest magnitude, keyed by the error value.

    Once full, a new error is admitted only if its magnitude exceeds the
    smallest retained magnitude, which it replaces. Repeated error values
    are ignored.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = max(1, capacity)
        self._entries: dict[float, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, mass_error: float, description: str) -> bool:
        """Offer an error; returns True if it was retained."""
        if mass_error in self._entries:
            return False

        if len(self._entries) < self.capacity:
            self._entries[mass_error] = description
            return True

        smallest = min(self._entries, key=abs)
        if abs(mass_error) <= abs(smallest):
            return False

        del self._entries[smallest]
        self._entries[mass_error] = description
        return True

    @property
    def entries(self) -> list[tuple[float, str]]:
        """Retained (error, description) pairs sorted by error value."""
        return sorted(self._entries.items())

    def examples(self) -> list[tuple[float, str]]:
        """First, last and middle entries, for rejection messages."""
        entries = self.entries
        if not entries:
            return []
        if len(entries) == 1:
            return [entries[0]]
        if len(entries) == 2:
            return [entries[0], entries[-1]]

        middle = next(e for i, e in enumerate(entries) if i + 1 >= len(entries) / 2)
        return [entries[0], entries[-1], middle]


@dataclass
class MassErrorResult:
    """Verdict of a mass error validation."""

    accepted: bool
    message: str
    psm_count: int
    error_count: int
    tolerance_da: float
    percent_invalid: float = 0.0
    threshold_percent: float = 5.0
    examples: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.accepted


def format_example(mass_error: float, description: str) -> str:
    return f"{mass_error:.2f} Da for {description}"


def assess_mass_errors(
    psm_count: int,
    error_count: int,
    tolerance_da: float,
    largest_errors: Optional[LargestErrorsTable] = None,
    threshold_percent: float = 5.0,
    threshold_count: int = 25,
    dia_search: bool = False,
    ignore_errors: bool = False,
) -> MassErrorResult:
    """
    Turn PSM and error counts into an accept/reject verdict.

    Accepts when there is nothing to validate, when there are no errors, or
    when ``percent <= threshold_percent`` or ``errors <= threshold_count``.
    Otherwise the batch is rejected, unless it is a DIA search or
    ``ignore_errors`` is set, in which case the failure is downgraded to a
    warning.

    Args:
        psm_count: Number of PSMs evaluated
        error_count: Number of PSMs outside tolerance
        tolerance_da: Effective base tolerance, for messages
        largest_errors: Table of the largest errors, for rejection examples
        threshold_percent: Percent of errors that is still acceptable
        threshold_count: Number of errors that is still acceptable
        dia_search: Whether the search was DIA
        ignore_errors: Accept failing batches with a warning

    Returns:
        MassErrorResult
    """
    result = MassErrorResult(
        accepted=True,
        message='',
        psm_count=psm_count,
        error_count=error_count,
        tolerance_da=tolerance_da,
        threshold_percent=threshold_percent,
    )

    if psm_count == 0:
        result.message = "No PSMs with a computable peptide mass were found; nothing to validate"
        result.warnings.append(result.message)
        logger.warning(result.message)
        return result

    if error_count <= 0:
        result.message = (
            f"All {psm_count:,} peptides have a mass error below {tolerance_da:.1f} Da"
        )
        logger.info(result.message)
        return result

    result.percent_invalid = error_count / psm_count * 100
    summary = (
        f"{result.percent_invalid:.2f}% of the peptides have a mass error over "
        f"{tolerance_da:.1f} Da ({error_count:,} / {psm_count:,})"
    )

    if result.percent_invalid <= threshold_percent or error_count <= threshold_count:
        result.message = summary + "; this value is within tolerance"
        result.warnings.append(result.message)
        logger.warning(result.message)
        return result

    if dia_search:
        result.message = summary + "; ignoring since processing DIA results"
        result.warnings.append(result.message)
        logger.warning(result.message)
        return result

    result.message = summary + f"; this value is too large (over {threshold_percent:.1f}%)"
    if largest_errors is not None:
        result.examples = [format_example(e, d) for e, d in largest_errors.examples()]
        if result.examples:
            result.message += "; large error examples: " + "; ".join(result.examples)

    if ignore_errors:
        warning = f"Ignoring mass error validation failure: {result.message}"
        result.warnings.append(warning)
        logger.warning(warning)
        return result

    result.accepted = False
    logger.error(result.message)
    logger.error("To ignore this error, set validation.ignore_errors to true")
    return result


class MassErrorValidator:
    """Checks precursor mass errors in a merged result file."""

    def __init__(self, config: Optional[MassErrorConfig] = None):
        self.config = config or MassErrorConfig()

    def effective_tolerance(self, params: SearchEngineParameters) -> float:
        """Declared tolerance, raised to the configured floor."""
        return max(params.precursor_tolerance_da, self.config.tolerance_floor_da)

    def is_high_resolution(self, params: SearchEngineParameters) -> bool:
        return params.precursor_tolerance_da < self.config.high_res_tolerance_da

    def validate(
        self,
        results_path: Path,
        params_path: Optional[Path] = None,
        tool_name: str = '',
        params: Optional[SearchEngineParameters] = None,
    ) -> MassErrorResult:
        """
        Validate the mass errors of every PSM in a merged result file.

        Rows that repeat a (scan, charge, peptide) already seen (the same PSM
        listed for another protein) are evaluated once. Rows whose peptide
        mass cannot be computed are skipped and not counted.

        Args:
            results_path: Merged tab-delimited result file
            params_path: Search engine parameter file (None to assume 10 Da)
            tool_name: Name of the search tool; may relax the percent threshold
            params: Already loaded parameters (overrides params_path)

        Returns:
            MassErrorResult

        Raises:
            FileNotFoundError: If the results file does not exist
            ValueError: If the file is empty or a required column is missing
        """
        config = self.config
        results_path = Path(results_path)
        if not results_path.exists():
            raise FileNotFoundError(f"Results file not found: {results_path}")

        if params is None:
            params = load_search_engine_parameters(params_path)

        tolerance = self.effective_tolerance(params)
        high_res = self.is_high_resolution(params)
        ccm = params.charge_carrier_mass if params.charge_carrier_mass is not None else PROTON_MASS

        header_line = read_header_line(results_path)
        if header_line is None:
            raise ValueError(f"Results file is empty: {results_path.name}")

        required = [config.scan_col, config.charge_col, config.peptide_col, config.precursor_mz_col]
        column_map = map_header_columns(header_line, required, results_path)
        header = header_line.split('\t')
        columns = {name: header[idx] for name, idx in column_map.items()}
        isotope_col = find_column(set(header), config.isotope_error_col)
        use_isotope_error = high_res and isotope_col is not None

        logger.info(f"Validating mass errors in {results_path.name}")
        logger.info(
            f"  Tolerance: {tolerance:.1f} Da (+1 Da per charge above 1)"
            + ("; high-resolution isotope error check enabled" if use_isotope_error else "")
        )

        usecols = list(columns.values())
        if isotope_col is not None:
            usecols.append(isotope_col)

        largest = LargestErrorsTable(config.largest_errors_capacity)
        seen: set[tuple] = set()
        psm_count = 0
        error_count = 0

        reader = pd.read_csv(
            results_path,
            sep='\t',
            usecols=usecols,
            dtype=str,
            index_col=False,
            chunksize=config.chunksize,
            keep_default_na=False,
            quoting=csv.QUOTE_NONE,
        )

        for chunk in reader:
            scans = pd.to_numeric(chunk[columns[config.scan_col]], errors='coerce').to_numpy(dtype=float)
            charges = pd.to_numeric(chunk[columns[config.charge_col]], errors='coerce').to_numpy(dtype=float)
            mz = pd.to_numeric(chunk[columns[config.precursor_mz_col]], errors='coerce').to_numpy(dtype=float)
            peptides = chunk[columns[config.peptide_col]].to_numpy(dtype=object)
            computed = np.array([_peptide_mass(p) for p in peptides], dtype=float)

            valid = np.isfinite(scans) & np.isfinite(charges) & np.isfinite(mz) & (computed > 0)

            for i in np.flatnonzero(valid):
                key = (scans[i], charges[i], peptides[i])
                if key in seen:
                    valid[i] = False
                else:
                    seen.add(key)

            neutral = precursor_neutral_mass(mz, charges, ccm)
            mass_error = neutral - computed

            if use_isotope_error:
                isotope = pd.to_numeric(chunk[isotope_col], errors='coerce').fillna(0).to_numpy(dtype=float)
                mass_error = mass_error - np.trunc(isotope)
                psm_tolerance = 0.2 + computed / 50000.0
            else:
                psm_tolerance = tolerance + charges - 1

            is_error = valid & (np.abs(mass_error) > psm_tolerance)

            psm_count += int(valid.sum())
            error_count += int(is_error.sum())

            for i in np.flatnonzero(is_error):
                record = MassErrorRecord(
                    scan=int(scans[i]),
                    charge=int(charges[i]),
                    peptide=peptides[i],
                    precursor_neutral_mass=float(neutral[i]),
                    computed_mass=float(computed[i]),
                    mass_error=float(mass_error[i]),
                    tolerance=float(psm_tolerance[i]),
                )
                largest.add(record.mass_error, record.description)

        logger.debug(f"  Evaluated {psm_count:,} PSMs; {error_count:,} outside tolerance")

        result = assess_mass_errors(
            psm_count=psm_count,
            error_count=error_count,
            tolerance_da=tolerance,
            largest_errors=largest,
            threshold_percent=config.threshold_percent_for(tool_name),
            threshold_count=config.error_threshold_count,
            dia_search=params.dia_search_enabled,
            ignore_errors=config.ignore_errors,
        )
        result.warnings = params.warnings + result.warnings
        return result


def validate_mass_errors(
    results_path: Path,
    params_path: Optional[Path] = None,
    tool_name: str = '',
    config: Optional[MassErrorConfig] = None,
) -> MassErrorResult:
    """Validate a merged result file with a fresh :class:`MassErrorValidator`."""
    return MassErrorValidator(config).validate(results_path, params_path, tool_name)
