"""Tests for dissmap.report module (integration test)."""

import pandas as pd

from dissmap.report import generate_report
from dissmap.tests.fixtures import generate_synthetic_site_table
from dissmap.zeta import MSGDMConfig


class TestReport:
    def test_full_pipeline(self, tmp_path):
        table, env = generate_synthetic_site_table(n_sites=9, seed=42)
        out = tmp_path / "report_output"
        generate_report(table, out, env=env, msgdm_config=MSGDMConfig(sam=None))

        for name in ("richness", "turnover", "diss_bcurt", "gower_dissimilarity", "mutual_info"):
            assert (out / f"orderwise_{name}_order2.csv").exists()
        assert (out / "distances_km.csv").exists()
        assert (out / "gower_dissimilarity.csv").exists()
        assert (out / "zeta_decline.csv").exists()
        assert (out / "zeta_decline.txt").exists()
        assert (out / "calibration.csv").exists()
        assert (out / "msgdm_summary.txt").exists()
        assert (out / "predicted_dissimilarity.csv").exists()
        assert (out / "predicted_ordination.csv").exists()

        turnover = pd.read_csv(out / "orderwise_turnover_order2.csv")
        assert len(turnover) == 36
        assert list(turnover.columns) == ["site_from", "site_to", "value", "x", "y"]

        summary = (out / "msgdm_summary.txt").read_text()
        assert "Explained deviance" in summary
        assert "temp" in summary

    def test_without_environment(self, tmp_path):
        table, _ = generate_synthetic_site_table(n_sites=6)
        out = tmp_path / "no_env"
        generate_report(table, out, metrics=["turnover", "abund"])
        assert (out / "orderwise_turnover_order2.csv").exists()
        assert (out / "calibration.csv").exists()
        assert not (out / "msgdm_summary.txt").exists()

    def test_failing_metric_is_skipped(self, tmp_path):
        table, _ = generate_synthetic_site_table(n_sites=6)
        out = tmp_path / "order_one"
        generate_report(table, out, metrics=["richness", "turnover", "no_such_metric"], order=1)
        assert (out / "orderwise_richness_order1.csv").exists()
        assert not (out / "orderwise_turnover_order1.csv").exists()
        assert not (out / "orderwise_no_such_metric_order1.csv").exists()
