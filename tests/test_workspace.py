from pathlib import Path

from stepgrader.workspace import ResultWorkspace, actual_path, mismatch_path


def test_actual_path_layout():
    path = actual_path(Path("results"), "clients", "Q1", "2")
    assert path == Path("results/actual/clients/Q1/stage_2.txt")


def test_paths_default_blank_parts():
    assert actual_path(Path("r"), "servers", "", "") == Path("r/actual/servers/Unknown/stage_0.txt")
    assert mismatch_path(Path("r"), "", "3") == Path("r/mismatches/Unknown/stage_3.diff.txt")


def test_path_segments_cannot_escape():
    path = actual_path(Path("r"), "clients", "../etc", "..")
    assert path == Path("r/actual/clients/.._etc/stage__.txt")


def test_prepare_case_removes_stale_results(tmp_path):
    workspace = ResultWorkspace(tmp_path)
    case_dir = workspace.prepare_case("login")
    (case_dir / "actual" / "stale.txt").write_text("old")

    again = workspace.prepare_case("login")

    assert again == tmp_path / "login"
    assert (again / "actual").is_dir()
    assert not (again / "actual" / "stale.txt").exists()
