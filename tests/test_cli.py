"""Tests for the samedirs command line and result export."""

import csv
import json
import os

import pytest

from subtree_detector import build_arg_parser, main


def test_cli_single_root_report(tmp_path, make_tree, capsys):
    root = make_tree(
        tmp_path / "R",
        {"a/x.txt": "hello", "a/note": "n", "b/x.txt": "hello", "c1": "dup!", "c2": "dup!"},
    )
    assert main([str(root)]) == 0

    out = capsys.readouterr().out
    expected = "\n".join(
        [
            os.path.join("a", "x.txt"),
            os.path.join("b", "x.txt"),
            "",
            "c1",
            "c2",
            "",
            "",
        ]
    )
    assert out == expected


def test_cli_multi_root_prints_given_paths(tmp_path, make_tree, capsys):
    g1 = make_tree(tmp_path / "G1", {"sub/p.txt": "aa", "sub/q.txt": "bb", "x": "1"})
    g2 = make_tree(tmp_path / "G2", {"sub/p.txt": "aa", "sub/q.txt": "bb", "yy": "22"})
    assert main([str(g1), str(g2)]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines == [str(g1 / "sub") + os.sep, str(g2 / "sub") + os.sep, ""]


def test_cli_no_duplicates_prints_nothing(tmp_path, make_tree, capsys):
    root = make_tree(tmp_path / "R", {"a": "1", "b": "22"})
    assert main([str(root)]) == 0
    assert capsys.readouterr().out == ""


def test_cli_bad_root_aborts_without_report(tmp_path, make_tree, capsys):
    good = make_tree(tmp_path / "G1", {"a": "dup", "b": "dup"})
    missing = tmp_path / "missing"
    assert main([str(good), str(missing)]) == 1

    captured = capsys.readouterr()
    assert captured.out == ""
    assert str(missing) in captured.err


def test_cli_requires_a_directory(capsys):
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args([])


def test_cli_export_json(tmp_path, make_tree, capsys):
    root = make_tree(tmp_path / "R", {"a": "dup", "b": "dup"})
    output = tmp_path / "out.json"
    assert main([str(root), "--export", str(output)]) == 0

    data = json.loads(output.read_text(encoding="utf-8"))
    assert data["roots"] == [str(root)]
    assert data["multi_root"] is False
    assert data["groups"][0]["paths"] == ["a", "b"]
    assert data["stats"]["total_duplicate_groups"] == 1


def test_export_csv(tmp_path, make_tree, detector):
    g1 = make_tree(tmp_path / "G1", {"f": "same"})
    g2 = make_tree(tmp_path / "G2", {"g": "same", "h": "other"})
    result = detector.scan([g1, g2])
    output = tmp_path / "out.csv"
    detector.export_results(result, output, format="csv")

    with output.open(newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["Path"] for row in rows] == [str(g1 / "f"), str(g2 / "g")]
    assert [row["RootGroup"] for row in rows] == ["1", "2"]
    assert {row["Group"] for row in rows} == {"1"}
    assert rows[0]["SizeBytes"] == "4"


def test_export_rejects_unknown_format(tmp_path, make_tree, detector):
    root = make_tree(tmp_path / "R", {"a": "dup", "b": "dup"})
    result = detector.scan([root])
    with pytest.raises(ValueError):
        detector.export_results(result, tmp_path / "out.xml", format="xml")
