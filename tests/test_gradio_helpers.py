import os
import time
from pathlib import Path

import pytest

from survey_trends import gradio_ui
from survey_trends.main import PlotLayer, PlotParams


def make_run_dirs(root: Path, names: list[str], base_time: float = None):
    if base_time is None:
        base_time = time.time()
    dirs = []
    for i, name in enumerate(names):
        d = root / name
        d.mkdir(parents=True, exist_ok=True)
        # later entries get a newer mtime
        os.utime(d, (base_time + i, base_time + i))
        dirs.append(d)
    return dirs


def remaining(root: Path) -> set[str]:
    return {p.name for p in root.iterdir() if p.is_dir()}


def test_parse_plot_specs_blank_input():
    default = PlotParams()
    assert gradio_ui.parse_plot_specs(None, default) == []
    assert gradio_ui.parse_plot_specs("  \n ", default) == []


def test_parse_plot_specs_mixed_lines():
    default = PlotParams(symlog_y=True)
    raw = """layers=PRELIMINARY
layers=DATA_POINTS+FITTED_CURVE,x_min=2010,y_max='40'
{"layers": "RESIDUAL", "y_min": null, "symlog_y": false}
"""
    specs = gradio_ui.parse_plot_specs(raw, default)
    assert len(specs) == 3
    assert specs[0].plot_layers == PlotLayer.PRELIMINARY
    assert specs[0].symlog_y is True
    assert specs[1].plot_layers == PlotLayer.DATA_POINTS | PlotLayer.FITTED_CURVE
    assert specs[1].x_min == 2010.0 and specs[1].y_max == 40.0
    assert specs[2].plot_layers == PlotLayer.RESIDUAL
    assert specs[2].y_min is None and specs[2].symlog_y is False
    # the default is copied, never mutated
    assert default.plot_layers == PlotLayer.DEFAULT


def test_parse_plot_specs_reports_bad_line():
    with pytest.raises(ValueError, match="layers=NOPE"):
        gradio_ui.parse_plot_specs("layers=SUMMARY\nlayers=NOPE", PlotParams())
    with pytest.raises(ValueError, match="Unknown key"):
        gradio_ui.parse_plot_specs("colour=red", PlotParams())
    with pytest.raises(ValueError, match="x_max"):
        gradio_ui.parse_plot_specs("x_max=soon", PlotParams())


def test_default_plot_spec_text_round_trips():
    _, _, plots = gradio_ui.get_default_params()
    text = gradio_ui._default_plot_spec_text(plots)
    assert text.splitlines()[0] == "layers=PRELIMINARY,symlog_y=true"
    parsed = gradio_ui.parse_plot_specs(text, PlotParams())
    assert [p.plot_layers for p in parsed] == [p.plot_layers for p in plots]


def test_uploaded_paths_accepts_gradio_shapes():
    class Upload:
        name = "/tmp/c.xlsx"

    files = ["/tmp/a.xlsx", {"path": "/tmp/b.xlsx"}, Upload(), {"other": 1}]
    assert gradio_ui._uploaded_paths(files) == ["/tmp/a.xlsx", "/tmp/b.xlsx", "/tmp/c.xlsx"]
    assert gradio_ui._uploaded_paths(None) == []
    assert gradio_ui._uploaded_paths("/tmp/single.xls") == ["/tmp/single.xls"]


def test_run_pipeline_without_upload_returns_message():
    html, zip_path, report = gradio_ui._run_pipeline([], "egg-mass")
    assert zip_path is None
    assert html.startswith("Error: No workbook uploaded")
    assert report == html


def test_prune_keeps_newest_timestamped_runs(tmp_path: Path):
    root = tmp_path / "output_gradio"
    names = [f"2026010{i}T120000" for i in range(1, 6)]
    # mtimes deliberately reversed; timestamp names win
    make_run_dirs(root, list(reversed(names)))
    gradio_ui._prune_old_runs(root, keep=2)
    assert remaining(root) == {"20260105T120000", "20260104T120000"}


def test_prune_falls_back_to_mtime(tmp_path: Path):
    root = tmp_path / "output_gradio"
    dirs = make_run_dirs(root, [f"run_{i}" for i in range(4)])
    gradio_ui._prune_old_runs(root, keep=1)
    assert remaining(root) == {dirs[-1].name}


def test_prune_env_var_and_disable(tmp_path: Path, monkeypatch):
    root = tmp_path / "output_gradio"
    make_run_dirs(root, [f"run_{i}" for i in range(6)])
    monkeypatch.setenv("SURVEY_TRENDS_RETENTION_KEEP", "0")
    gradio_ui._prune_old_runs(root)
    assert len(remaining(root)) == 6

    monkeypatch.setenv("SURVEY_TRENDS_RETENTION_KEEP", "3")
    gradio_ui._prune_old_runs(root)
    assert remaining(root) == {"run_3", "run_4", "run_5"}

    # garbage falls back to the default of 10
    monkeypatch.setenv("SURVEY_TRENDS_RETENTION_KEEP", "many")
    gradio_ui._prune_old_runs(root)
    assert len(remaining(root)) == 3


def test_prune_skips_symlinks(tmp_path: Path):
    root = tmp_path / "output_gradio"
    outside = tmp_path / "keep_me"
    outside.mkdir()
    make_run_dirs(root, ["run_0", "run_1"])
    link = root / "run_link"
    try:
        link.symlink_to(outside, target_is_directory=True)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported")
    gradio_ui._prune_old_runs(root, keep=1)
    assert outside.exists()
    assert link.is_symlink()


def test_prune_missing_root_is_noop(tmp_path: Path):
    gradio_ui._prune_old_runs(tmp_path / "absent", keep=1)
