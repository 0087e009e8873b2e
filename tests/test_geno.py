import numpy as np
import pandas as pd
import pytest

from kinscan.geno import (
    align_samples,
    align_to_map,
    marker_qc,
    natural_key,
    read_genotypes,
    read_map,
    write_genotypes,
)


def test_read_npz(geno_file, geno):
    loaded = read_genotypes(geno_file)
    assert loaded.shape == geno.shape
    assert list(loaded.index) == list(geno.index)
    np.testing.assert_array_equal(loaded.to_numpy(), geno.to_numpy())


def test_read_table_with_missing_tokens(tmp_path):
    path = tmp_path / "geno.tsv"
    path.write_text("id\tm1\tm2\tm3\nA\t-1\tNA\t1\nB\t0\t1\t.\nC\t1\t-1\t0\n")
    geno = read_genotypes(str(path))
    assert geno.shape == (3, 3)
    assert np.isnan(geno.loc["A", "m2"])
    assert np.isnan(geno.loc["B", "m3"])
    assert geno.loc["C", "m1"] == 1


def test_read_table_012_coding(tmp_path):
    path = tmp_path / "geno.csv"
    path.write_text("id,m1,m2\nA,0,2\nB,1,NA\n")
    geno = read_genotypes(str(path), coding="012")
    assert geno.loc["A"].tolist() == [-1.0, 1.0]
    assert geno.loc["B", "m1"] == 0.0


def test_read_rejects_out_of_range_values(tmp_path):
    path = tmp_path / "geno.csv"
    path.write_text("id,m1,m2\nA,0,2\nB,1,0\n")
    with pytest.raises(ValueError, match="must lie in"):
        read_genotypes(str(path))
    with pytest.raises(ValueError, match="Invalid coding"):
        read_genotypes(str(path), coding="ACGT")


def test_read_markers_in_rows_drops_map_columns(tmp_path):
    path = tmp_path / "geno.tsv"
    path.write_text("marker\tchrom\tpos\tA\tB\nm1\t1\t100\t-1\t1\nm2\t1\t200\t0\t0\n")
    geno = read_genotypes(str(path), markers_in_rows=True)
    assert list(geno.index) == ["A", "B"]
    assert list(geno.columns) == ["m1", "m2"]
    assert geno.loc["B", "m1"] == 1


def test_write_then_read_table(tmp_path, geno):
    with_missing = geno.copy()
    with_missing.iloc[0, 0] = np.nan
    path = str(tmp_path / "out" / "geno.tsv")
    write_genotypes(with_missing, path)
    loaded = read_genotypes(path)
    assert np.isnan(loaded.iloc[0, 0])
    np.testing.assert_array_equal(loaded.iloc[1:].to_numpy(), geno.iloc[1:].to_numpy())


def test_read_map_positional_columns(tmp_path):
    path = tmp_path / "map.csv"
    path.write_text("Name,Chr,Position\nm1,1,100\nm2,2,50\n")
    map_df = read_map(str(path))
    assert list(map_df.columns) == ["marker", "chrom", "pos"]
    assert map_df["chrom"].tolist() == ["1", "2"]


def test_read_map_duplicates(tmp_path):
    path = tmp_path / "map.csv"
    path.write_text("marker,chrom,pos\nm1,1,100\nm1,2,50\n")
    with pytest.raises(ValueError, match="Duplicated marker"):
        read_map(str(path))


def test_natural_key_orders_chromosomes():
    assert sorted(["10", "2", "1", "X"], key=natural_key) == ["1", "2", "10", "X"]
    assert sorted(["chr10", "chr2"], key=natural_key) == ["chr2", "chr10"]


def test_align_to_map_orders_and_subsets():
    geno = pd.DataFrame([[0, 1, -1, 0]], index=["A"], columns=["m1", "m2", "m3", "m4"], dtype=float)
    map_df = pd.DataFrame({
        "marker": ["m1", "m2", "m3", "m5"],
        "chrom": ["10", "2", "2", "1"],
        "pos": [5, 300, 100, 1],
    })
    aligned, aligned_map = align_to_map(geno, map_df)
    assert list(aligned.columns) == ["m3", "m2", "m1"]
    assert aligned_map["marker"].tolist() == ["m3", "m2", "m1"]
    assert aligned.loc["A", "m3"] == -1


def test_align_to_map_without_overlap():
    geno = pd.DataFrame([[0.0]], index=["A"], columns=["m1"])
    map_df = pd.DataFrame({"marker": ["x"], "chrom": ["1"], "pos": [1]})
    with pytest.raises(ValueError, match="No markers shared"):
        align_to_map(geno, map_df)


def test_marker_qc():
    geno = pd.DataFrame({
        "mono": [1.0, 1.0, 1.0, 1.0],
        "half": [-1.0, 1.0, -1.0, 1.0],
        "gappy": [np.nan, np.nan, np.nan, 0.0],
    })
    qc = marker_qc(geno, max_missing=0.5)
    assert qc.loc["half", "freq"] == pytest.approx(0.5)
    assert qc.loc["mono", "maf"] == 0
    assert qc.loc["gappy", "missing_rate"] == pytest.approx(0.75)
    assert qc["keep"].tolist() == [False, True, False]


def test_align_samples(pheno, geno):
    subset = geno.iloc[5:].iloc[::-1]
    phe_sub, geno_sub = align_samples(pheno, subset, "gid")
    assert len(phe_sub) == len(geno) - 5
    assert list(geno_sub.index) == phe_sub["gid"].tolist()

    with pytest.raises(ValueError, match="No individuals shared"):
        align_samples(pheno.assign(gid=[f"x{i}" for i in range(len(pheno))]), geno, "gid")


def test_align_to_map_logs_unmapped_markers(log_records):
    geno = pd.DataFrame([[0.0, 1.0, -1.0]], index=["A"], columns=["m1", "m2", "m3"])
    map_df = pd.DataFrame({"marker": ["m1", "m2"], "chrom": ["1", "1"], "pos": [10, 20]})
    aligned, _ = align_to_map(geno, map_df)
    assert list(aligned.columns) == ["m1", "m2"]
    assert any(r.levelname == "WARNING" and "1 markers without map position were dropped" in r.getMessage()
               for r in log_records.records)
