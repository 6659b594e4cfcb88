"""Gradio UI wrapper for the survey trend pipeline.

Upload one or more survey workbooks, pick an analysis preset, and get the
report, the SVG plots and a ZIP of every artifact.
"""

import logging
import os
import shutil
import time
import traceback
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Tuple

# The Agg backend is selected in survey_trends.main at import time.

try:
    from .main import (
        PIPELINES,
        AnalysisParams,
        LoadParams,
        PlotParams,
        _parse_bool,
        _parse_plot_layers,
        _plot_layers_suffix,
        assemble_text_report,
        build_run_identity,
        get_default_params,
        load_workbooks,
        render_plots,
        resolve_pipeline_config,
        result_tables,
        run_pipeline,
    )
    from .utils import create_zip_async, ensure_run_dir, write_tables, write_text_report
except ImportError:
    from main import (  # type: ignore
        PIPELINES,
        AnalysisParams,
        LoadParams,
        PlotParams,
        _parse_bool,
        _parse_plot_layers,
        _plot_layers_suffix,
        assemble_text_report,
        build_run_identity,
        get_default_params,
        load_workbooks,
        render_plots,
        resolve_pipeline_config,
        result_tables,
        run_pipeline,
    )
    from utils import create_zip_async, ensure_run_dir, write_tables, write_text_report  # type: ignore

import gradio as gr

logger = logging.getLogger(__name__)

RUN_ROOT = Path("output_gradio")


def parse_plot_specs(raw: Optional[str], default_plot: PlotParams) -> List[PlotParams]:
    """
    Parse multiline plot spec input. Each non-empty line is either a JSON object
    (starts with '{') or a key=value[,key=value...] spec. Returns [] for blank input.
    Raises ValueError naming the offending line.
    """
    import json

    if raw is None or str(raw).strip() == "":
        return []

    def _float_or_none(v, field_name: str) -> Optional[float]:
        if v is None or (isinstance(v, str) and v.strip().lower() in ("", "none", "null")):
            return None
        try:
            return float(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid numeric value for {field_name}: {v!r}") from e

    def _apply(params: PlotParams, key: str, value: Any) -> None:
        if key == "layers":
            params.plot_layers = _parse_plot_layers(str(value))
        elif key == "symlog_y":
            params.symlog_y = _parse_bool(value)
        elif key in ("x_min", "x_max", "y_min", "y_max"):
            setattr(params, key, _float_or_none(value, key))
        else:
            raise ValueError(f"Unknown key in plot spec: {key}")

    def _parse_json_line(ln: str) -> PlotParams:
        spec = json.loads(ln)
        if not isinstance(spec, dict):
            raise ValueError(f"JSON plot spec must be an object/dict, got {type(spec)}")
        params = replace(default_plot)
        for key, value in spec.items():
            _apply(params, key, value)
        return params

    def _parse_kv_line(ln: str) -> PlotParams:
        params = replace(default_plot)
        for kv in (p.strip() for p in ln.split(",")):
            if not kv:
                continue
            if "=" not in kv:
                raise ValueError(f"Invalid key=value pair: {kv!r}")
            key, value = kv.split("=", 1)
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1].strip()
            _apply(params, key.strip(), value)
        return params

    parsed: List[PlotParams] = []
    for ln in (line.strip() for line in str(raw).splitlines()):
        if not ln:
            continue
        try:
            parsed.append(_parse_json_line(ln) if ln[0] == "{" else _parse_kv_line(ln))
        except ValueError as e:
            raise ValueError(f"Failed to parse plot spec line: {ln!r} -> {e}") from e
    return parsed


def _prune_old_runs(run_root: Path, keep: Optional[int] = None) -> None:
    """
    Keep only the newest `keep` run directories under `run_root`.

    keep defaults to SURVEY_TRENDS_RETENTION_KEEP (10); keep <= 0 disables pruning.
    Timestamp-named directories (YYYYmmddTHHMMSS) are ordered by name, anything
    else by mtime. Symlinks and paths resolving outside run_root are never deleted.
    Deletion failures are logged and retried on a later run.
    """
    if keep is None:
        try:
            keep = int(os.getenv("SURVEY_TRENDS_RETENTION_KEEP", "10"))
        except ValueError:
            keep = 10
    if keep <= 0:
        logger.debug(f"retention keep <=0 ({keep}) -> skipping prune")
        return
    if not run_root.exists() or not run_root.is_dir():
        return

    subdirs = [p for p in run_root.iterdir() if p.is_dir()]

    def _looks_like_run_ts(name: str) -> bool:
        return (
            len(name) >= 15
            and name[0:8].isdigit()
            and name[8] == "T"
            and name[9:15].isdigit()
        )

    if all(_looks_like_run_ts(p.name) for p in subdirs):
        subdirs_sorted = sorted(subdirs, key=lambda p: p.name, reverse=True)
    else:
        subdirs_sorted = sorted(subdirs, key=lambda p: p.stat().st_mtime, reverse=True)

    root_resolved = run_root.resolve()
    for d in subdirs_sorted[keep:]:
        if d.is_symlink():
            logger.warning(f"Skipping symlink during prune: {d}")
            continue
        resolved = d.resolve()
        if os.path.commonpath([str(root_resolved), str(resolved)]) != str(root_resolved):
            logger.warning(f"Skipping prune of {d} - resolved outside run_root")
            continue
        try:
            shutil.rmtree(d)
            logger.info(f"Pruned old run dir: {d}")
        except OSError as e:
            logger.warning(f"Failed to prune {d}: {e}")


def _uploaded_paths(files: Any) -> List[str]:
    """gr.File may hand back paths, file objects or dicts depending on version."""
    if files is None:
        return []
    if not isinstance(files, (list, tuple)):
        files = [files]
    paths: List[str] = []
    for f in files:
        if isinstance(f, str):
            paths.append(f)
        elif isinstance(f, dict):
            p = f.get("path") or f.get("name") or f.get("tmp_path")
            if p:
                paths.append(p)
        elif getattr(f, "name", None):
            paths.append(f.name)
    return paths


def _run_pipeline(
    uploaded_paths: List[str],
    pipeline: str,
    log_offset: Optional[float] = None,
    transect_average: Optional[bool] = None,
    survey_sheet: Optional[str] = None,
    date_format: Optional[str] = None,
    plot_specs_raw: Optional[str] = None,
) -> Tuple[str, Optional[str], str]:
    """
    Execute the pipeline and return (html_embed, zip_path, report_text), or
    (error_text, None, error_text) on failure.
    """
    t0 = time.time()
    logger.info(f"_run_pipeline START - files={uploaded_paths!r} pipeline={pipeline}")

    if not uploaded_paths:
        msg = "Error: No workbook uploaded. Please upload at least one .xls/.xlsx file."
        return msg, None, msg

    d_load, d_analysis, d_plots = get_default_params()
    load = LoadParams(
        workbook_paths=[Path(p).resolve() for p in uploaded_paths],
        survey_sheet=(survey_sheet or "").strip() or d_load.survey_sheet,
        transect_sheet=d_load.transect_sheet,
        date_format=(date_format or "").strip() or d_load.date_format,
    )
    analysis = AnalysisParams(
        pipeline=pipeline or d_analysis.pipeline,
        log_offset=log_offset,
        transect_average=transect_average,
    )

    try:
        list_plot_params = parse_plot_specs(plot_specs_raw, d_plots[0]) or d_plots
    except ValueError as ve:
        msg = f"Plot specs parse error\n{ve}"
        return msg, None, msg

    try:
        config = resolve_pipeline_config(analysis)
        _, short_hash, _, _ = build_run_identity(load, analysis)
        run_dir = ensure_run_dir(".", prefix=str(RUN_ROOT))

        loaded = load_workbooks(load, config)
        outputs = run_pipeline(
            loaded.observations, config, analysis, transects=loaded.transects
        )
        report_text = assemble_text_report(outputs, loaded.sources)
        report_path = write_text_report(report_text, run_dir, short_hash)
        table_paths = write_tables(result_tables(outputs), run_dir, short_hash)
        svg_paths = [
            Path(p)
            for p in render_plots(
                list_plot_params, outputs, short_hash, output_dir=str(run_dir)
            )
        ]
    except Exception as e:
        tb = traceback.format_exc()
        msg = f"Error running pipeline\n{e}\n{tb}"
        logger.debug(f"_run_pipeline EXCEPTION: {e}\n{tb}")
        return msg, None, msg

    _prune_old_runs(RUN_ROOT)

    zip_path = str(run_dir / f"survey-trends-{short_hash}.zip")
    create_zip_async(zip_path, [*svg_paths, *table_paths, report_path])

    parts = []
    for svg_path in sorted(svg_paths):
        try:
            parts.append(f"<div>{svg_path.read_text(encoding='utf-8')}</div>")
        except OSError:
            parts.append(f"<!-- Failed to read {svg_path} -->")

    logger.info(f"_run_pipeline COMPLETE (duration_ms={(time.time() - t0) * 1000:.1f})")
    return "\n".join(parts), zip_path, report_text


def _default_plot_spec_text(plots: List[PlotParams]) -> str:
    lines: List[str] = []
    for pp in plots:
        parts = [f"layers={_plot_layers_suffix(pp.plot_layers)}"]
        if pp.symlog_y:
            parts.append("symlog_y=true")
        for key in ("x_min", "x_max", "y_min", "y_max"):
            if getattr(pp, key) is not None:
                parts.append(f"{key}={getattr(pp, key)}")
        lines.append(",".join(parts))
    return "\n".join(lines)


def _build_ui():
    with gr.Blocks() as demo:
        d_load, d_analysis, d_plots = get_default_params()
        gr.Markdown("### Survey trend analysis: amphibian egg masses, adults and squirrel calls")
        gr.HTML("""
<style>
  #report_box textarea {
    font-family: "SF Mono", "Menlo", "Monaco", "Consolas", "Liberation Mono", "Courier New", monospace;
    font-size: 13px;
    line-height: 1.3;
    resize: vertical;
    min-height: 200px;
    max-height: 800px;
  }
</style>
""")
        with gr.Row():
            file_input = gr.File(
                label="Upload survey workbooks",
                file_types=[".xls", ".xlsx"],
                file_count="multiple",
            )
        with gr.Row():
            pipeline = gr.Radio(
                label="pipeline",
                choices=sorted(PIPELINES),
                value=d_analysis.pipeline,
            )
            survey_sheet = gr.Textbox(label="survey sheet", value=d_load.survey_sheet)
            date_format = gr.Textbox(label="date format", value=d_load.date_format)
        with gr.Row():
            log_offset = gr.Number(
                label="log offset (blank = pipeline default)",
                value=None,
                precision=3,
            )
            transect_average = gr.Checkbox(
                label="fit transect-average fallback",
                value=bool(PIPELINES[d_analysis.pipeline].transect_average),
            )

        def _sync_fallback(pipeline_name):
            return gr.update(value=bool(PIPELINES[pipeline_name].transect_average))

        pipeline.change(_sync_fallback, inputs=[pipeline], outputs=[transect_average])

        plot_specs = gr.Textbox(
            label="Plot specs (optional) - one per line (key=value,... or JSON)",
            placeholder='layers=SUMMARY\nlayers=DATA_POINTS+FITTED_CURVE,symlog_y=true\n{"layers":"RESIDUAL"}',
            value=_default_plot_spec_text(d_plots),
            lines=4,
        )
        run_button = gr.Button("Run")
        report_code = gr.Textbox(
            value="", lines=20, interactive=False, elem_id="report_box", label="Report"
        )
        output_html = gr.HTML(label="Plots")
        output_zip = gr.File(label="Download ZIP")

        def _click(files, pipeline_v, offset_v, avg_v, sheet_v, fmt_v, specs_v):
            return _run_pipeline(
                _uploaded_paths(files),
                pipeline_v,
                log_offset=offset_v,
                transect_average=bool(avg_v),
                survey_sheet=sheet_v,
                date_format=fmt_v,
                plot_specs_raw=specs_v,
            )

        run_button.click(
            _click,
            inputs=[
                file_input,
                pipeline,
                log_offset,
                transect_average,
                survey_sheet,
                date_format,
                plot_specs,
            ],
            outputs=[output_html, output_zip, report_code],
        )

    return demo


if __name__ == "__main__":
    demo = _build_ui()
    demo.launch()
