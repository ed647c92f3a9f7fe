"""Search engine parameter file parsing.

MS-GF+ parameter files are ``key=value`` text with ``#`` comments. Only
the settings the mass error check needs are interpreted:

- ``PrecursorMassTolerance`` (alias ``PMTolerance``): ``20ppm``, ``0.5Da``,
  ``2.5`` or an asymmetric pair such as ``0.5Da,2.5Da``
- ``PrecursorMassToleranceUnits``: 0 for Da, 1 for ppm, used when the
  tolerance value has no unit suffix
- ``ChargeCarrierMass``: custom charge carrier mass
- ``data_type``: 1 or 2 marks a DIA search
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Tolerance assumed when no usable parameter file is available
DEFAULT_TOLERANCE_DA = 10.0

# ppm tolerances are converted to Da at this mass
PPM_REFERENCE_MASS = 2000.0

TOLERANCE_KEYS = ('PrecursorMassTolerance', 'PMTolerance')
TOLERANCE_UNITS_KEY = 'PrecursorMassToleranceUnits'
CHARGE_CARRIER_KEY = 'ChargeCarrierMass'
DATA_TYPE_KEY = 'data_type'

_TOLERANCE_PATTERN = re.compile(
    r'^\s*(\d+(?:\.\d*)?(?:[eE][-+]?\d+)?)\s*(ppm|da)?\s*$',
    re.IGNORECASE,
)


@dataclass
class SearchEngineParameters:
    """Settings read from a search engine parameter file."""

    parameters: dict[str, str] = field(default_factory=dict)
    precursor_tolerance_da: float = DEFAULT_TOLERANCE_DA
    tolerance_declared: bool = False
    charge_carrier_mass: Optional[float] = None
    source_path: Optional[Path] = None
    warnings: list[str] = field(default_factory=list)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive parameter lookup."""
        lowered = key.lower()
        for name, value in self.parameters.items():
            if name.lower() == lowered:
                return value
        return default

    @property
    def dia_search_enabled(self) -> bool:
        """True if ``data_type`` declares a DIA search (1 or 2)."""
        value = self.get(DATA_TYPE_KEY)
        if value is None:
            return False
        try:
            return int(value) in (1, 2)
        except ValueError:
            return False


def parse_tolerance(value: str, units: Optional[str] = None) -> float:
    """Convert a precursor tolerance setting to Da.

    Args:
        value: Tolerance text, e.g. ``20ppm`` or ``0.5Da,2.5Da``
        units: ``PrecursorMassToleranceUnits`` value, if present

    Returns:
        Tolerance in Da (the larger side for asymmetric tolerances)

    Raises:
        ValueError: If the value cannot be parsed

    """
    default_unit = 'ppm' if units is not None and units.strip() == '1' else 'da'

    tolerances = []
    for part in value.split(','):
        match = _TOLERANCE_PATTERN.match(part)
        if match is None:
            raise ValueError(f"Unable to parse precursor mass tolerance: {value}")

        amount = float(match.group(1))
        unit = (match.group(2) or default_unit).lower()
        if unit == 'ppm':
            amount = amount * PPM_REFERENCE_MASS / 1e6
        tolerances.append(amount)

    return max(tolerances)


def read_parameter_file(filepath: Path) -> dict[str, str]:
    """Read ``key=value`` settings, ignoring blank lines and ``#`` comments."""
    parameters = {}
    with open(filepath, encoding='utf-8') as f:
        for line in f:
            line = line.split('#', 1)[0].strip()
            if not line or '=' not in line:
                continue
            key, value = line.split('=', 1)
            parameters[key.strip()] = value.strip()
    return parameters


def _fallback(message: str, params: SearchEngineParameters) -> SearchEngineParameters:
    logger.warning(message)
    params.warnings.append(message)
    params.precursor_tolerance_da = DEFAULT_TOLERANCE_DA
    params.tolerance_declared = False
    return params


def load_search_engine_parameters(filepath: Optional[Path]) -> SearchEngineParameters:
    """Load the settings used by mass error validation.

    A missing or unreadable file, or one without a usable tolerance, does
    not fail: a tolerance of 10 Da is assumed and a warning recorded.

    Args:
        filepath: Parameter file, or None if not available

    Returns:
        SearchEngineParameters

    """
    params = SearchEngineParameters()

    if filepath is None:
        return _fallback(
            f"Search engine parameter file not defined; will assume a maximum tolerance "
            f"of {DEFAULT_TOLERANCE_DA:.0f} Da",
            params,
        )

    filepath = Path(filepath)
    params.source_path = filepath

    if not filepath.exists():
        return _fallback(
            f"Search engine parameter file not found: {filepath.name}; will assume a maximum "
            f"tolerance of {DEFAULT_TOLERANCE_DA:.0f} Da",
            params,
        )

    try:
        params.parameters = read_parameter_file(filepath)
    except (OSError, UnicodeDecodeError) as e:
        return _fallback(
            f"Error loading search engine parameter file {filepath.name}: {e}; will assume a "
            f"maximum tolerance of {DEFAULT_TOLERANCE_DA:.0f} Da",
            params,
        )

    ccm = params.get(CHARGE_CARRIER_KEY)
    if ccm:
        try:
            params.charge_carrier_mass = float(ccm)
            logger.debug(f"Custom charge carrier mass defined: {params.charge_carrier_mass:.3f} Da")
        except ValueError:
            message = f"Ignoring non-numeric {CHARGE_CARRIER_KEY}: {ccm}"
            logger.warning(message)
            params.warnings.append(message)

    tolerance_text = None
    for key in TOLERANCE_KEYS:
        tolerance_text = params.get(key)
        if tolerance_text:
            break

    if not tolerance_text:
        return _fallback(
            f"Precursor mass tolerance not defined in {filepath.name}; will assume a maximum "
            f"tolerance of {DEFAULT_TOLERANCE_DA:.0f} Da",
            params,
        )

    try:
        params.precursor_tolerance_da = parse_tolerance(tolerance_text, params.get(TOLERANCE_UNITS_KEY))
    except ValueError as e:
        return _fallback(
            f"{e} in {filepath.name}; will assume a maximum tolerance of {DEFAULT_TOLERANCE_DA:.0f} Da",
            params,
        )

    params.tolerance_declared = True
    logger.debug(f"Precursor mass tolerance from {filepath.name}: {params.precursor_tolerance_da:.4f} Da")
    return params
