"""Tests for mass error validation."""

import pytest

from psm_merge.masses import PROTON_MASS, compute_peptide_mass
from psm_merge.validation import (
    LargestErrorsTable,
    MassErrorConfig,
    MassErrorValidator,
    assess_mass_errors,
    validate_mass_errors,
)

HEADER = "ScanNum\tCharge\tPrecursor\tIsotopeError\tPeptide\tProtein\tSpecEValue"
AMINO_ACIDS = "ACDEFGHIKLMNPQRSTVWY"


def _peptide(i):
    return f"K.PEPTIDE{AMINO_ACIDS[i % 20]}{AMINO_ACIDS[(i // 20) % 20]}K.R"


def _row(scan, charge, peptide, mass_offset=0.0, isotope_error=0, protein="Prot1", ccm=PROTON_MASS):
    """Build a result row whose precursor is ``mass_offset`` Da from the computed mass."""
    mz = (compute_peptide_mass(peptide) + mass_offset) / charge + ccm
    return f"{scan}\t{charge}\t{mz:.6f}\t{isotope_error}\t{peptide}\t{protein}\t1E-10"


def _write_results(path, rows, header=HEADER):
    path.write_text("\n".join([header] + rows) + "\n")
    return path


def _results_with_errors(path, n_psms, n_errors):
    rows = []
    for i in range(n_psms):
        offset = 50.0 + i * 0.1 if i < n_errors else 0.0
        rows.append(_row(i + 1, 2, _peptide(i), mass_offset=offset))
    return _write_results(path, rows)


class TestAssessMassErrors:
    """Tests for the accept/reject decision."""

    def test_count_threshold_boundary_accepts(self):
        """Test that 25 errors in 100 PSMs is accepted."""
        result = assess_mass_errors(psm_count=100, error_count=25, tolerance_da=6.0)
        assert result.accepted
        assert "within tolerance" in result.message

    def test_over_both_thresholds_rejects(self):
        """Test that 26 errors in 100 PSMs (26%) is rejected."""
        result = assess_mass_errors(psm_count=100, error_count=26, tolerance_da=6.0)
        assert not result.accepted
        assert result.percent_invalid == pytest.approx(26.0)
        assert "too large" in result.message

    def test_percent_threshold_alone_accepts(self):
        """Test that 5% errors is accepted even above the count threshold."""
        result = assess_mass_errors(psm_count=1000, error_count=50, tolerance_da=6.0)
        assert result.accepted

    def test_no_errors(self):
        """Test that zero errors is accepted without warnings."""
        result = assess_mass_errors(psm_count=10, error_count=0, tolerance_da=6.0)
        assert result.accepted
        assert result.warnings == []

    def test_no_psms(self):
        """Test that nothing to validate is accepted with a warning."""
        result = assess_mass_errors(psm_count=0, error_count=0, tolerance_da=6.0)
        assert result.accepted
        assert len(result.warnings) == 1

    def test_dia_downgrades_failure(self):
        """Test that DIA searches only warn."""
        result = assess_mass_errors(psm_count=100, error_count=60, tolerance_da=6.0, dia_search=True)
        assert result.accepted
        assert "DIA" in result.message

    def test_ignore_errors(self):
        """Test that ignore_errors accepts a failing batch with a warning."""
        result = assess_mass_errors(psm_count=100, error_count=60, tolerance_da=6.0, ignore_errors=True)
        assert result.accepted
        assert any("Ignoring" in w for w in result.warnings)

    def test_rejection_examples(self):
        """Test that a rejection cites first, last and middle examples."""
        table = LargestErrorsTable()
        for i, error in enumerate([10.0, 20.0, 30.0, 40.0]):
            table.add(error, f"Scan={i}")

        result = assess_mass_errors(
            psm_count=100, error_count=60, tolerance_da=6.0, largest_errors=table
        )

        assert result.examples == [
            "10.00 Da for Scan=0",
            "40.00 Da for Scan=3",
            "20.00 Da for Scan=1",
        ]
        assert result.message.endswith(
            "large error examples: 10.00 Da for Scan=0; 40.00 Da for Scan=3; 20.00 Da for Scan=1"
        )


class TestLargestErrorsTable:
    """Tests for the bounded largest-errors table."""

    def test_fills_to_capacity(self):
        """Test that entries are admitted freely until full."""
        table = LargestErrorsTable(capacity=3)
        for error in [1.0, 2.0, 3.0]:
            assert table.add(error, "x")
        assert len(table) == 3

    def test_smaller_error_rejected_when_full(self):
        """Test that a smaller magnitude is not admitted once full."""
        table = LargestErrorsTable(capacity=3)
        for error in [1.0, 2.0, 3.0]:
            table.add(error, "x")

        assert not table.add(0.5, "small")
        assert [e for e, _ in table.entries] == [1.0, 2.0, 3.0]

    def test_larger_error_replaces_minimum(self):
        """Test that a larger magnitude replaces the smallest retained one."""
        table = LargestErrorsTable(capacity=3)
        for error in [1.0, 2.0, 3.0]:
            table.add(error, "x")

        assert table.add(-10.0, "negative")
        assert [e for e, _ in table.entries] == [-10.0, 2.0, 3.0]

    def test_duplicate_error_ignored(self):
        """Test that a repeated error value keeps the first description."""
        table = LargestErrorsTable(capacity=3)
        table.add(5.0, "first")
        assert not table.add(5.0, "second")
        assert table.entries == [(5.0, "first")]

    def test_examples_small_tables(self):
        """Test examples for tables with one and two entries."""
        table = LargestErrorsTable()
        table.add(7.0, "a")
        assert table.examples() == [(7.0, "a")]

        table.add(9.0, "b")
        assert table.examples() == [(7.0, "a"), (9.0, "b")]

    def test_examples_middle_entry(self):
        """Test the middle example of a three-entry table."""
        table = LargestErrorsTable()
        for error, desc in [(7.0, "a"), (8.0, "b"), (9.0, "c")]:
            table.add(error, desc)

        assert table.examples() == [(7.0, "a"), (9.0, "c"), (8.0, "b")]


class TestMassErrorConfig:
    """Tests for MassErrorConfig."""

    def test_defaults(self):
        """Test default thresholds."""
        config = MassErrorConfig()
        assert config.error_threshold_percent == 5.0
        assert config.error_threshold_count == 25
        assert config.largest_errors_capacity == 100

    def test_relaxed_tool_threshold(self):
        """Test that tools matching a relaxed prefix get the wider threshold."""
        config = MassErrorConfig()
        assert config.threshold_percent_for("MaxQuant_v2.4") == 10.0
        assert config.threshold_percent_for("MSGFPlus") == 5.0
        assert config.threshold_percent_for("") == 5.0


class TestMassErrorValidator:
    """Tests for MassErrorValidator.validate on result files."""

    def test_exact_masses_accepted(self, tmp_path):
        """Test that PSMs with zero mass error are never flagged."""
        results = _results_with_errors(tmp_path / "results.tsv", 20, 0)

        result = validate_mass_errors(results)

        assert result.accepted
        assert result.psm_count == 20
        assert result.error_count == 0

    def test_boundary_25_errors_accepted(self, tmp_path):
        """Test 100 PSMs with 25 errors."""
        results = _results_with_errors(tmp_path / "results.tsv", 100, 25)

        result = validate_mass_errors(results)

        assert result.accepted
        assert result.error_count == 25

    def test_boundary_26_errors_rejected(self, tmp_path):
        """Test 100 PSMs with 26 errors."""
        results = _results_with_errors(tmp_path / "results.tsv", 100, 26)

        result = validate_mass_errors(results)

        assert not result.accepted
        assert result.error_count == 26
        assert len(result.examples) == 3
        assert all("Scan=" in example for example in result.examples)

    def test_relaxed_tool(self, tmp_path):
        """Test that a MaxQuant tool name widens the percent threshold."""
        results = _results_with_errors(tmp_path / "results.tsv", 300, 27)

        assert not validate_mass_errors(results).accepted
        assert validate_mass_errors(results, tool_name="MaxQuant").accepted

    def test_ignore_errors(self, tmp_path):
        """Test that ignore_errors accepts a failing file."""
        results = _results_with_errors(tmp_path / "results.tsv", 50, 40)

        result = validate_mass_errors(results, config=MassErrorConfig(ignore_errors=True))

        assert result.accepted
        assert result.error_count == 40

    def test_dia_parameters(self, tmp_path):
        """Test that a DIA parameter file downgrades a failure."""
        results = _results_with_errors(tmp_path / "results.tsv", 50, 40)
        params = tmp_path / "params.txt"
        params.write_text("PrecursorMassTolerance=20ppm\ndata_type=1\n")

        result = validate_mass_errors(results, params)

        assert result.accepted

    def test_tolerance_widens_with_charge(self, tmp_path):
        """Test that each charge above 1 adds 1 Da of tolerance."""
        rows = [
            _row(1, 1, _peptide(1), mass_offset=10.5),
            _row(2, 3, _peptide(2), mass_offset=10.5),
        ]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results)

        assert result.psm_count == 2
        assert result.error_count == 1

    def test_tolerance_floor(self, tmp_path):
        """Test that tolerances below 6 Da are raised to 6 Da."""
        params = tmp_path / "params.txt"
        params.write_text("PrecursorMassTolerance=2.5Da\n")
        rows = [_row(1, 1, _peptide(1), mass_offset=5.0)]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results, params)

        assert result.tolerance_da == 6.0
        assert result.error_count == 0

    def test_high_resolution_isotope_error(self, tmp_path):
        """Test the isotope error correction for high-resolution searches."""
        params = tmp_path / "params.txt"
        params.write_text("PrecursorMassTolerance=20ppm\n")
        rows = [
            _row(1, 2, _peptide(1), mass_offset=1.00335, isotope_error=1),
            _row(2, 2, _peptide(2), mass_offset=1.00335, isotope_error=0),
            _row(3, 2, _peptide(3)),
        ]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results, params)

        assert result.psm_count == 3
        assert result.error_count == 1

    def test_low_resolution_ignores_isotope_error(self, tmp_path):
        """Test that wide-tolerance searches use the per-charge tolerance."""
        params = tmp_path / "params.txt"
        params.write_text("PrecursorMassTolerance=2.5Da\n")
        rows = [_row(1, 2, _peptide(1), mass_offset=1.00335, isotope_error=0)]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results, params)

        assert result.error_count == 0

    def test_custom_charge_carrier_mass(self, tmp_path):
        """Test that a ChargeCarrierMass setting is used for neutral masses."""
        params = tmp_path / "params.txt"
        params.write_text("PrecursorMassTolerance=10Da\nChargeCarrierMass=10.0\n")
        rows = [_row(i, 2, _peptide(i), ccm=10.0) for i in range(1, 6)]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results, params)

        assert result.error_count == 0

    def test_uncomputable_peptides_skipped(self, tmp_path):
        """Test that rows without a computable peptide mass are not counted."""
        rows = [
            _row(1, 2, _peptide(1)),
            "2\t2\t500.0\t0\tK.PEPTXDE.R\tProt1\t1E-10",
        ]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results)

        assert result.psm_count == 1

    def test_protein_duplicates_counted_once(self, tmp_path):
        """Test that a PSM listed for several proteins is evaluated once."""
        rows = [
            _row(1, 2, _peptide(1), mass_offset=40.0, protein="ProtX"),
            _row(1, 2, _peptide(1), mass_offset=40.0, protein="ProtY"),
            _row(2, 2, _peptide(2)),
        ]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results)

        assert result.psm_count == 2
        assert result.error_count == 1

    def test_missing_parameter_file(self, tmp_path):
        """Test that a missing parameter file falls back to 10 Da with a warning."""
        results = _results_with_errors(tmp_path / "results.tsv", 5, 0)

        result = validate_mass_errors(results, tmp_path / "missing_params.txt")

        assert result.tolerance_da == 10.0
        assert any("10 Da" in w for w in result.warnings)

    def test_header_only(self, tmp_path):
        """Test that a file with no PSMs is accepted with a warning."""
        results = _write_results(tmp_path / "results.tsv", [])

        result = validate_mass_errors(results)

        assert result.accepted
        assert result.psm_count == 0
        assert result.warnings

    def test_missing_precursor_column(self, tmp_path):
        """Test that a missing precursor column names the column."""
        results = _write_results(
            tmp_path / "results.tsv",
            ["1\t2\tPEPTIDEK\tProt1"],
            header="ScanNum\tCharge\tPeptide\tProtein",
        )

        with pytest.raises(ValueError, match="Precursor"):
            MassErrorValidator().validate(results)

    def test_missing_results_file(self, tmp_path):
        """Test that a missing results file is an error."""
        with pytest.raises(FileNotFoundError):
            validate_mass_errors(tmp_path / "missing.tsv")

    def test_extra_trailing_field(self, tmp_path):
        """Test that a row with one field more than the header keeps its columns aligned."""
        rows = [
            _row(1, 2, _peptide(1)) + "\textra",
            _row(2, 2, _peptide(2)),
        ]
        results = _write_results(tmp_path / "results.tsv", rows)

        result = validate_mass_errors(results)

        assert result.psm_count == 2
        assert result.error_count == 0
