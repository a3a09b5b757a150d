import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from phylogwas.cli import main


TOY_NEXUS = """#nexus
BEGIN TREES;
  TREE t1 = (((S1:1.0,S2:1.0):0.5,(S3:1.0,S4:1.0):0.5):0.5,((S5:1.0,S6:1.0):0.5,S7:1.5):0.5);
END;
"""

SAMPLES = ["S1", "S2", "S3", "S4", "S5", "S6", "S7"]


class TestCliIntegration(unittest.TestCase):
    def _build_toy_inputs(self, phenotype: list[str] | None = None) -> tuple[Path, Path, Path, Path]:
        td = Path(tempfile.mkdtemp(prefix="phylogwas_cli_"))
        tree = td / "tree.tre"
        tree.write_text(TOY_NEXUS, encoding="utf-8")

        if phenotype is None:
            phenotype = ["1", "1", "1", "0", "0", "0", "1"]
        pheno_tsv = td / "phenotype.tsv"
        # Rows deliberately out of tree order.
        self._write_tsv(
            pheno_tsv,
            ["sample", "resistance"],
            [[s, v] for s, v in reversed(list(zip(SAMPLES, phenotype)))],
        )

        geno_tsv = td / "genotype.tsv"
        geno_rows = [
            ["S1", "1", "0", "0"],
            ["S2", "1", "0", "1"],
            ["S3", "1", "0", "0"],
            ["S4", "0", "0", "1"],
            ["S5", "0", "0", "0"],
            ["S6", "0", "0", "1"],
            ["S7", "1", "0", "0"],
        ]
        self._write_tsv(geno_tsv, ["sample", "geneA", "geneB", "geneC"], geno_rows)
        return td, tree, pheno_tsv, geno_tsv

    @staticmethod
    def _write_tsv(path: Path, header: list[str], rows: list[list[str]]) -> None:
        lines = ["\t".join(header)]
        lines.extend("\t".join(r) for r in rows)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    @staticmethod
    def _read_rows(path: Path) -> list[dict[str, str]]:
        lines = path.read_text(encoding="utf-8").splitlines()
        header = lines[0].split("\t")
        return [dict(zip(header, line.split("\t"))) for line in lines[1:]]

    def test_discrete_run_end_to_end(self) -> None:
        td, tree, pheno_tsv, geno_tsv = self._build_toy_inputs()
        out_prefix = td / "out" / "discrete"

        rc = main(
            [
                "--tree",
                str(tree),
                "--phenotype",
                str(pheno_tsv),
                "--genotype",
                str(geno_tsv),
                "--out-prefix",
                str(out_prefix),
            ]
        )
        self.assertEqual(rc, 0)

        nodes = self._read_rows(Path(str(out_prefix) + ".node_states.tsv"))
        edges = self._read_rows(Path(str(out_prefix) + ".edge_transitions.tsv"))
        models = self._read_rows(Path(str(out_prefix) + ".model_selection.tsv"))
        meta = json.loads(Path(str(out_prefix) + ".run_metadata.json").read_text(encoding="utf-8"))

        self.assertEqual(len(nodes), 4 * 13)
        self.assertEqual(len(edges), 4 * 12)
        self.assertEqual([r["trait"] for r in models], ["resistance", "geneA", "geneB", "geneC"])

        tip_rows = [r for r in nodes if r["trait"] == "resistance" and r["kind"] == "tip"]
        self.assertEqual([r["label"] for r in tip_rows], SAMPLES)
        self.assertEqual([r["state"] for r in tip_rows], ["1", "1", "1", "0", "0", "0", "1"])
        self.assertTrue(all(r["confidence"] == "1" for r in tip_rows))

        # geneA equals the phenotype, geneB never varies.
        pheno_edges = [r["direction"] for r in edges if r["trait"] == "resistance"]
        gene_a_edges = [r["direction"] for r in edges if r["trait"] == "geneA"]
        self.assertEqual(pheno_edges, gene_a_edges)
        self.assertTrue(all(r["transition"] == "0" for r in edges if r["trait"] == "geneB"))
        self.assertEqual(models[2]["selected_model"], "ER")
        self.assertEqual(models[2]["n_transitions"], "0")

        self.assertEqual(meta["tool"], "phylogwas")
        self.assertEqual(meta["parameters"]["trait_type"], "discrete")
        self.assertEqual(meta["parameters"]["trait_type_source"], "auto")
        self.assertEqual(meta["tree"]["n_tips"], 7)
        self.assertEqual(meta["results"]["n_genotypes"], 3)
        self.assertEqual(
            meta["results"]["n_genotypes_er"] + meta["results"]["n_genotypes_ard"], 3
        )

    def test_continuous_run_end_to_end(self) -> None:
        td, tree, pheno_tsv, geno_tsv = self._build_toy_inputs(
            ["0.3", "1.1", "2.4", "0.9", "4.2", "3.3", "2.0"]
        )
        out_prefix = td / "out" / "continuous"

        rc = main(
            [
                "--tree",
                str(tree),
                "--phenotype",
                str(pheno_tsv),
                "--genotype",
                str(geno_tsv),
                "--out-prefix",
                str(out_prefix),
            ]
        )
        self.assertEqual(rc, 0)

        nodes = self._read_rows(Path(str(out_prefix) + ".node_states.tsv"))
        edges = self._read_rows(Path(str(out_prefix) + ".edge_transitions.tsv"))
        models = self._read_rows(Path(str(out_prefix) + ".model_selection.tsv"))
        meta = json.loads(Path(str(out_prefix) + ".run_metadata.json").read_text(encoding="utf-8"))

        pheno_rows = [r for r in nodes if r["trait"] == "resistance"]
        self.assertEqual(len(pheno_rows), 13)
        self.assertTrue(all(r["trait_type"] == "continuous" for r in pheno_rows))
        self.assertTrue(all(r["confidence"] == "1" for r in pheno_rows))
        self.assertEqual(len(edges), 3 * 12)
        self.assertEqual(len(models), 3)
        self.assertEqual(meta["phenotype"]["model"], "BM")

    def test_progress_logs_are_emitted(self) -> None:
        td, tree, pheno_tsv, geno_tsv = self._build_toy_inputs()
        out_prefix = td / "out" / "progress"
        stderr = io.StringIO()

        with contextlib.redirect_stderr(stderr):
            rc = main(
                [
                    "--tree",
                    str(tree),
                    "--phenotype",
                    str(pheno_tsv),
                    "--genotype",
                    str(geno_tsv),
                    "--out-prefix",
                    str(out_prefix),
                ]
            )
        self.assertEqual(rc, 0)
        logs = stderr.getvalue()
        self.assertIn("[phylogwas] [1/4]", logs)
        self.assertIn("[phylogwas] Ancestral reconstruction 75% complete", logs)
        self.assertIn("[phylogwas] [4/4] Run complete; outputs were written successfully", logs)

    def test_sample_mismatch_is_reported(self) -> None:
        td, tree, pheno_tsv, _ = self._build_toy_inputs()
        geno_tsv = td / "short_genotype.tsv"
        self._write_tsv(geno_tsv, ["sample", "geneA"], [[s, "0"] for s in SAMPLES[:-1]])
        stderr = io.StringIO()

        with contextlib.redirect_stderr(stderr):
            rc = main(
                [
                    "--tree",
                    str(tree),
                    "--phenotype",
                    str(pheno_tsv),
                    "--genotype",
                    str(geno_tsv),
                    "--out-prefix",
                    str(td / "out" / "mismatch"),
                ]
            )
        self.assertEqual(rc, 1)
        self.assertIn("ERROR: Sample mismatch", stderr.getvalue())

    def test_too_few_tips_is_reported(self) -> None:
        td, tree, pheno_tsv, geno_tsv = self._build_toy_inputs()
        stderr = io.StringIO()

        with contextlib.redirect_stderr(stderr):
            rc = main(
                [
                    "--tree",
                    str(tree),
                    "--phenotype",
                    str(pheno_tsv),
                    "--genotype",
                    str(geno_tsv),
                    "--min-tips",
                    "8",
                    "--out-prefix",
                    str(td / "out" / "few"),
                ]
            )
        self.assertEqual(rc, 1)
        self.assertIn("at least 8 tips", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
