"""Peptide and precursor mass calculations.

Peptides are written the way MS-GF+ reports them: residue letters with
numeric modification deltas inline, optionally with flanking residues,
e.g. ``K.+42.011M+15.995PEPTIDE.R``.
"""

from __future__ import annotations

import re

from pyteomics import mass

from .topk import remove_prefix_and_suffix

# Mass of the charge carrier (a proton) unless the search overrides it
PROTON_MASS = mass.nist_mass['H+'][0][0]

NUMERIC_MOD_PATTERN = re.compile(r'[+-]\d+(?:\.\d+)?')


def parse_numeric_mods(peptide: str) -> tuple[str, list[float]]:
    """Separate a peptide into its residue sequence and numeric mod deltas.

    Flanking residues are removed first. Characters that are neither residue
    letters nor numeric mods (static mod symbols such as ``*`` or ``#``) are
    dropped.

    Returns:
        Tuple of (plain sequence, list of modification masses)

    """
    peptide = remove_prefix_and_suffix(peptide)
    mods = [float(m) for m in NUMERIC_MOD_PATTERN.findall(peptide)]
    sequence = ''.join(c for c in NUMERIC_MOD_PATTERN.sub('', peptide) if c.isalpha())
    return sequence, mods


def compute_peptide_mass(peptide: str) -> float:
    """Monoisotopic neutral mass of a peptide, including numeric modifications.

    Returns 0.0 when the sequence is empty or contains a residue without a
    standard mass (e.g. ``X`` or ``B``), so callers can skip the row.
    """
    sequence, mods = parse_numeric_mods(peptide)
    if not sequence:
        return 0.0
    if any(residue not in mass.std_aa_mass for residue in sequence):
        return 0.0
    return mass.fast_mass(sequence) + sum(mods)


def precursor_neutral_mass(
    precursor_mz: float,
    charge: int,
    charge_carrier_mass: float = PROTON_MASS,
) -> float:
    """Convert an observed precursor m/z to a neutral mass."""
    return (precursor_mz - charge_carrier_mass) * charge
