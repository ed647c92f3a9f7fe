"""Per scan/charge retention of the best scoring peptides.

A split-database search reports the top hits for each spectrum once per
database slice. When the slices are recombined, only the best
``max_psms`` distinct peptides for each (scan, charge) pair are kept.

Scores are SpecEValue-style (lower is better). A peptide that maps to
several proteins is one entity for ranking but one output row per
protein, and all of its rows always carry the same (best) score.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

# Relative tolerance for score equality. SpecEValues routinely sit around
# 1e-10 to 1e-30, so an absolute epsilon would treat them all as ties.
SCORE_REL_TOLERANCE = 1e-9


@dataclass(frozen=True)
class PSMInfo:
    """One candidate peptide for a scan/charge, with its original row."""

    peptide: str
    score: float
    data_line: str


def scores_equal(a: float, b: float) -> bool:
    """Return True if two scores are equal within the relative tolerance."""
    return math.isclose(a, b, rel_tol=SCORE_REL_TOLERANCE, abs_tol=0.0)


def remove_prefix_and_suffix(peptide: str) -> str:
    """Strip single-residue flanking markers, e.g. ``K.PEPTIDE.R`` -> ``PEPTIDE``.

    Sequences of four characters or fewer are returned unchanged since they
    cannot safely hold both markers.
    """
    if len(peptide) > 4:
        if peptide[1] == ".":
            peptide = peptide[2:]
        if peptide[-2] == ".":
            peptide = peptide[:-2]
    return peptide


class ScanChargeTopK:
    """Best scoring PSMs for a single (scan, charge) observation.

    Entries are keyed by (protein, peptide). Admission rules:

    - anything is admitted while fewer than ``max_psms`` distinct scores
      are retained
    - a peptide that is already retained (under any protein) is always
      admitted so that its score can be reconciled
    - otherwise a PSM must beat the worst retained score, which evicts the
      whole worst-scoring group, or tie the best retained score, in which
      case it is kept alongside

    Tied peptides share one rank, so ties at the top are never evicted to
    honour ``max_psms``.
    """

    def __init__(self, scan: int, charge: int, max_psms: int = 1):
        self.scan = scan
        self.charge = charge
        self.max_psms = max(1, max_psms)

        self._psms: dict[tuple[str, str], PSMInfo] = {}
        self._distinct_scores: list[float] = []
        self.best_score = 0.0
        self.worst_score = 0.0

    def __len__(self) -> int:
        return len(self._psms)

    @property
    def psms(self) -> list[PSMInfo]:
        """Retained PSMs in the order they were admitted."""
        return list(self._psms.values())

    @property
    def items(self) -> list[tuple[str, PSMInfo]]:
        """Retained (protein, PSM) pairs in the order they were admitted."""
        return [(protein, psm) for (protein, _), psm in self._psms.items()]

    @property
    def peptides(self) -> set[str]:
        """Distinct (flank-stripped) peptides currently retained."""
        return {psm.peptide for psm in self._psms.values()}

    def insert(self, psm: PSMInfo, protein: str) -> bool:
        """Offer a PSM for this scan/charge.

        Args:
            psm: Candidate; its peptide may still carry flanking residues
            protein: Protein the peptide was matched to

        Returns:
            True if the retained set changed, False if the PSM was rejected

        """
        peptide = remove_prefix_and_suffix(psm.peptide)
        if peptide != psm.peptide:
            psm = replace(psm, peptide=peptide)

        key = (protein, peptide)

        if len(self._distinct_scores) < self.max_psms or peptide in self.peptides:
            existing = self._psms.get(key)
            if existing is not None and psm.score >= existing.score:
                return False
            self._psms[key] = psm
        elif psm.score < self.worst_score and not scores_equal(psm.score, self.worst_score):
            worst = self.worst_score
            for stale in [k for k, v in self._psms.items() if scores_equal(v.score, worst)]:
                del self._psms[stale]
            self._psms[key] = psm
        elif scores_equal(psm.score, self.best_score) and key not in self._psms:
            self._psms[key] = psm
        else:
            return False

        self._reconcile_scores()
        return True

    def _reconcile_scores(self) -> None:
        """Give every entry of a peptide the best score seen for it, then refresh bounds."""
        best_by_peptide: dict[str, float] = {}
        for psm in self._psms.values():
            current = best_by_peptide.get(psm.peptide)
            if current is None or psm.score < current:
                best_by_peptide[psm.peptide] = psm.score

        for key, psm in self._psms.items():
            best = best_by_peptide[psm.peptide]
            if best < psm.score:
                self._psms[key] = replace(psm, score=best)

        distinct: list[float] = []
        for score in sorted(psm.score for psm in self._psms.values()):
            if not distinct or not scores_equal(distinct[-1], score):
                distinct.append(score)
        self._distinct_scores = distinct

        if distinct:
            self.best_score = distinct[0]
            self.worst_score = distinct[-1]
        else:
            self.best_score = 0.0
            self.worst_score = 0.0
