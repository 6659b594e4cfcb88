#!/usr/bin/env python3
"""
Survey trend analysis pipeline.

Public entry points:
- load_workbooks()        read survey (and transect) sheets from one or more workbooks
- run_pipeline()          aggregate -> impute -> select model -> fit -> diagnose, per unit
- render_plots()          preliminary / summary / residual SVGs
- assemble_text_report()  plain-text report of checks, slopes and diagnostics

Everything that differs between the amphibian egg-mass, amphibian adult and
squirrel call analyses lives in a PipelineConfig; EGG_MASS, ADULT and
SQUIRREL_CALLS are the three presets. Each unit of analysis (species within a
study area, or a study area for squirrels) is fitted independently and a
failed fit is recorded without stopping the others.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from enum import IntFlag
from math import ceil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

# Select the non-interactive backend before pyplot is imported anywhere.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Support both package and script execution modes
try:
    # When run as a package: python -m survey_trends.main
    from .counts import (
        DEFAULT_DATE_FORMAT,
        DEFAULT_EXCLUDED_SPECIES,
        DEFAULT_HEADER_MAP,
        aggregate_counts,
        apply_header_map,
        average_counts,
        check_transect_coverage,
        crosstab_checks,
        impute_zero_counts,
        normalize_observations,
        sanitize_column_names,
        title_case_labels,
    )
    from .trends import (
        DEFAULT_YEAR_STEP,
        FittedModel,
        ModelFitError,
        ResidualDiagnostics,
        TransectAverageModel,
        diagnose_residuals,
        fit_trend,
        fitted_curve,
    )
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_tables,
        write_text_report,
    )
    from .workbook_processor import WorkbookProcessingError, WorkbookProcessor
except ImportError:
    # When run directly: python survey_trends/main.py
    from counts import (
        DEFAULT_DATE_FORMAT,
        DEFAULT_EXCLUDED_SPECIES,
        DEFAULT_HEADER_MAP,
        aggregate_counts,
        apply_header_map,
        average_counts,
        check_transect_coverage,
        crosstab_checks,
        impute_zero_counts,
        normalize_observations,
        sanitize_column_names,
        title_case_labels,
    )
    from trends import (
        DEFAULT_YEAR_STEP,
        FittedModel,
        ModelFitError,
        ResidualDiagnostics,
        TransectAverageModel,
        diagnose_residuals,
        fit_trend,
        fitted_curve,
    )
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_tables,
        write_text_report,
    )
    from workbook_processor import WorkbookProcessingError, WorkbookProcessor

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

GENERAL_SURVEY_SHEET: str = "General Survey"
TRANSECT_SHEET: str = "Transect Information"
SOURCE_COLUMN: str = "source_file"
UNIT_LABEL_SEPARATOR: str = " / "


# -------------------------
# Pipeline configuration
# -------------------------
@dataclass(frozen=True)
class PipelineConfig:
    """
    Everything that distinguishes one analysis from another.

    Attributes:
        name: Preset name, also used in artifact names.
        target_code: Value of stage_column counted by the aggregator (EG, AD, CA).
        stage_column: Column holding the life stage or detection type.
        count_column: Name of the output count field.
        dimensions: Grouping key of the aggregated counts; imputation crosses these.
        unit_columns: Key columns identifying one unit of analysis (one model each).
        log_offset: Constant added before taking logs (model response and residuals).
        survey_filter: Optional (column, value) row filter applied before counting.
        excluded_species: Species codes dropped as unidentified.
        all_species: Add the ALL.species pseudo-group per site/transect/year.
        impute_within: Dimensions inside which the remaining ones are crossed.
        impute_pooled: (dimension, by) pairs whose levels come from the coarser
            "by" groups, e.g. every transect of a site in every year.
        average_over: Dimension averaged away after imputation (squirrel dates).
        transect_average: Also fit OLS to transect-averaged counts per unit.
        read_transect_sheet: Read the transect sheet for coverage checks and extra
            zero-filled keys.
        crosstab_pairs: (row, column) pairs for the data-quality crosstabs.
    """

    name: str
    target_code: str
    stage_column: str
    count_column: str
    dimensions: Tuple[str, ...]
    unit_columns: Tuple[str, ...]
    log_offset: float = 0.0
    survey_filter: Optional[Tuple[str, str]] = None
    excluded_species: frozenset = field(default_factory=frozenset)
    all_species: bool = False
    impute_within: Optional[Tuple[str, ...]] = None
    impute_pooled: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    average_over: Optional[str] = None
    transect_average: bool = False
    read_transect_sheet: bool = False
    crosstab_pairs: Tuple[Tuple[str, str], ...] = ()


EGG_MASS = PipelineConfig(
    name="egg-mass",
    target_code="EG",
    stage_column="life_stage",
    count_column="n_eggmass",
    dimensions=("site", "transect", "year", "species"),
    unit_columns=("site", "species"),
    log_offset=0.1,
    survey_filter=("survey_type", "VI"),
    excluded_species=DEFAULT_EXCLUDED_SPECIES,
    all_species=True,
    crosstab_pairs=(
        ("site", "year"),
        ("transect", "year"),
        ("species", "year"),
        ("survey_type", "life_stage"),
        ("life_stage", "year"),
    ),
)

ADULT = replace(EGG_MASS, name="adult", target_code="AD", count_column="n_adults")

SQUIRREL_CALLS = PipelineConfig(
    name="squirrel-calls",
    target_code="CA",
    stage_column="detect_type",
    count_column="n_calls",
    dimensions=("site", "year", "transect", "date"),
    unit_columns=("site",),
    log_offset=0.0,
    impute_within=("site", "year"),
    impute_pooled=(("transect", ("site",)),),
    average_over="date",
    transect_average=True,
    read_transect_sheet=True,
    crosstab_pairs=(
        ("site", "year"),
        ("date", "year"),
        ("transect", "year"),
        ("species", "year"),
        ("detect_type", "year"),
    ),
)

PIPELINES: Dict[str, PipelineConfig] = {
    cfg.name: cfg for cfg in (EGG_MASS, ADULT, SQUIRREL_CALLS)
}


@dataclass
class LoadParams:
    """
    Parameters used when reading workbooks.

    Attributes:
        workbook_paths: Workbooks to read; rows are concatenated in this order.
        survey_sheet: Sheet holding one row per observation.
        transect_sheet: Sheet listing the transects run each year, or None to skip.
            Read only by pipelines that request it and only where the sheet exists.
        date_format: strptime format of text dates in the survey sheet.
        header_map: Extra sanitized-header -> canonical-name mappings, merged over
            the default map. Matching is case-insensitive; rename-induced
            duplicate column names raise ValueError.
    """

    workbook_paths: List[Path] = field(default_factory=list)
    survey_sheet: str = GENERAL_SURVEY_SHEET
    transect_sheet: Optional[str] = TRANSECT_SHEET
    date_format: str = DEFAULT_DATE_FORMAT
    header_map: Dict[str, str] = field(default_factory=dict)


@dataclass
class AnalysisParams:
    pipeline: str = EGG_MASS.name
    # None keeps the preset's offset / fallback setting
    log_offset: Optional[float] = None
    transect_average: Optional[bool] = None
    year_step: float = DEFAULT_YEAR_STEP
    dw_reps: int = 1000
    dw_seed: Optional[int] = 2013
    verbose: bool = False


def resolve_pipeline_config(analysis: AnalysisParams) -> PipelineConfig:
    """Return the named preset with AnalysisParams overrides applied."""
    if analysis.pipeline not in PIPELINES:
        raise ValueError(
            f"Unknown pipeline '{analysis.pipeline}'. Choices: {sorted(PIPELINES)}"
        )
    config = PIPELINES[analysis.pipeline]
    overrides: Dict[str, Any] = {}
    if analysis.log_offset is not None:
        if analysis.log_offset < 0:
            raise ValueError("log_offset must be non-negative")
        overrides["log_offset"] = float(analysis.log_offset)
    if analysis.transect_average is not None:
        overrides["transect_average"] = bool(analysis.transect_average)
    return replace(config, **overrides) if overrides else config


# -------------------------
# Loading
# -------------------------
@dataclass
class LoadedSurvey:
    observations: pd.DataFrame
    transects: Optional[pd.DataFrame]
    sources: List[str]
    raw_rows: int


def normalize_transect_sheet(
    raw: pd.DataFrame, header_map: Optional[Dict[str, str]] = None
) -> pd.DataFrame:
    """Sanitize and map transect-sheet headers and title-case site names."""
    df = raw.copy()
    df.columns = sanitize_column_names(df.columns)
    df = apply_header_map(df, header_map)
    if "transect" in df.columns:
        mask = df["transect"].map(lambda v: isinstance(v, str))
        df.loc[mask, "transect"] = df.loc[mask, "transect"].str.strip()
    return title_case_labels(df, columns=("site",))


def load_workbooks(params: LoadParams, config: PipelineConfig) -> LoadedSurvey:
    """
    Read and normalize the survey sheet of every workbook in params.workbook_paths.

    Each row keeps the name of its workbook in SOURCE_COLUMN. When the pipeline
    reads transect sheets, each workbook's transect rows are stamped with the
    survey year of that workbook's first dated observation.

    Raises:
        ValueError: If no workbook is given or the survey sheets are empty
        FileNotFoundError / WorkbookProcessingError: From WorkbookProcessor
    """
    if not params.workbook_paths:
        raise ValueError("At least one workbook path is required")
    header_map = {**DEFAULT_HEADER_MAP, **(params.header_map or {})}

    frames: List[pd.DataFrame] = []
    transect_frames: List[pd.DataFrame] = []
    raw_rows = 0
    for path in params.workbook_paths:
        with WorkbookProcessor(path) as wb:
            raw = wb.read_sheet(params.survey_sheet, source_column=SOURCE_COLUMN)
            raw_rows += len(raw)
            if raw.empty:
                logger.warning(f"Sheet '{params.survey_sheet}' in {path} has no rows")
                continue
            obs = normalize_observations(
                raw, header_map=header_map, date_format=params.date_format
            )
            frames.append(obs)
            logger.info(f"Loaded {len(obs)} observations from {Path(path).name}")

            if (
                config.read_transect_sheet
                and params.transect_sheet
                and wb.has_sheet(params.transect_sheet)
            ):
                tr = normalize_transect_sheet(
                    wb.read_sheet(params.transect_sheet, source_column=SOURCE_COLUMN),
                    header_map,
                )
                years = obs["year"].dropna()
                tr["year"] = int(years.iloc[0]) if len(years) else pd.NA
                transect_frames.append(tr)

    if not frames:
        raise ValueError("No observation rows found in the given workbooks")

    observations = pd.concat(frames, ignore_index=True)
    observations.attrs["invalid_dates"] = int(
        sum(f.attrs.get("invalid_dates", 0) for f in frames)
    )
    transects = (
        pd.concat(transect_frames, ignore_index=True) if transect_frames else None
    )
    return LoadedSurvey(
        observations=observations,
        transects=transects,
        sources=[Path(p).name for p in params.workbook_paths],
        raw_rows=raw_rows,
    )


# -------------------------
# Pipeline
# -------------------------
@dataclass
class PipelineOutputs:
    config: PipelineConfig
    observations: pd.DataFrame
    counts: pd.DataFrame
    imputed: pd.DataFrame
    # Table the models are fitted on (imputed, then averaged when configured)
    analysis_counts: pd.DataFrame
    crosstabs: Dict[str, pd.DataFrame] = field(default_factory=dict)
    transect_coverage: pd.DataFrame = field(default_factory=pd.DataFrame)
    unit_keys: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    unit_records: Dict[str, pd.DataFrame] = field(default_factory=dict)
    models: Dict[str, FittedModel] = field(default_factory=dict)
    diagnostics: Dict[str, ResidualDiagnostics] = field(default_factory=dict)
    curves: pd.DataFrame = field(default_factory=pd.DataFrame)
    transect_average: Dict[str, FittedModel] = field(default_factory=dict)
    transect_average_records: Dict[str, pd.DataFrame] = field(default_factory=dict)
    transect_average_diagnostics: Dict[str, ResidualDiagnostics] = field(
        default_factory=dict
    )
    transect_average_curves: pd.DataFrame = field(default_factory=pd.DataFrame)
    failures: Dict[str, str] = field(default_factory=dict)


def unit_label(values: Tuple[Any, ...]) -> str:
    return UNIT_LABEL_SEPARATOR.join(str(v) for v in values)


def _iter_units(table: pd.DataFrame, unit_columns: Tuple[str, ...]):
    """Yield (label, key dict, records) per unit, in key order."""
    cols = list(unit_columns)
    for key, grp in table.groupby(cols, sort=True):
        key = key if isinstance(key, tuple) else (key,)
        yield unit_label(key), dict(zip(cols, key)), grp.reset_index(drop=True)


def run_pipeline(
    observations: pd.DataFrame,
    config: PipelineConfig,
    analysis: Optional[AnalysisParams] = None,
    transects: Optional[pd.DataFrame] = None,
) -> PipelineOutputs:
    """
    Run aggregation, imputation and per-unit trend fitting on normalized observations.

    A ModelFitError in one unit is logged and stored in outputs.failures; the
    remaining units are still fitted. KeyMergeError and missing-column errors
    propagate, since they invalidate the whole table.
    """
    analysis = analysis or AnalysisParams(pipeline=config.name)

    crosstabs = crosstab_checks(observations, config.crosstab_pairs)
    coverage = pd.DataFrame()
    extra_keys = None
    if transects is not None:
        coverage = check_transect_coverage(observations, transects)
        if config.read_transect_sheet and config.impute_within:
            extra_keys = transects

    counts = aggregate_counts(
        observations,
        config.dimensions,
        config.target_code,
        config.stage_column,
        config.count_column,
        survey_filter=config.survey_filter,
        excluded_species=config.excluded_species,
        all_species=config.all_species,
        verbose=analysis.verbose,
    )
    if counts.empty:
        raise ValueError(
            f"No observations left to count for {config.name} after filtering"
        )
    imputed = impute_zero_counts(
        counts,
        config.dimensions,
        config.count_column,
        within=config.impute_within,
        pooled=dict(config.impute_pooled),
        extra_keys=extra_keys,
        verbose=analysis.verbose,
    )
    if config.average_over:
        analysis_counts = average_counts(
            imputed, over=config.average_over, count_column=config.count_column
        )
    else:
        analysis_counts = imputed

    unit_cols = list(config.unit_columns)
    crosstabs[f"{config.count_column} by {' x '.join(unit_cols)} x year"] = (
        pd.pivot_table(
            analysis_counts,
            index=unit_cols,
            columns="year",
            values=config.count_column,
            aggfunc="sum",
        )
    )

    outputs = PipelineOutputs(
        config=config,
        observations=observations,
        counts=counts,
        imputed=imputed,
        analysis_counts=analysis_counts,
        crosstabs=crosstabs,
        transect_coverage=coverage,
    )

    curves: List[pd.DataFrame] = []
    for label, key, records in _iter_units(analysis_counts, config.unit_columns):
        outputs.unit_keys[label] = key
        outputs.unit_records[label] = records
        try:
            fitted = fit_trend(
                records, label, config.count_column, log_offset=config.log_offset
            )
            curve = fitted_curve(fitted, step=analysis.year_step)
            diag = diagnose_residuals(
                fitted, reps=analysis.dw_reps, seed=analysis.dw_seed
            )
        except ModelFitError as e:
            outputs.failures[label] = str(e)
            logger.warning(f"Skipping {label}: {e}")
            continue
        outputs.models[label] = fitted
        outputs.diagnostics[label] = diag
        curves.append(curve)
    outputs.curves = _concat_or_empty(curves, ["unit", "year", "pred_mean"])

    if config.transect_average:
        _fit_transect_averages(outputs, analysis)

    logger.info(
        f"{config.name}: fitted {len(outputs.models)} units, "
        f"{len(outputs.failures)} failed"
    )
    return outputs


def _concat_or_empty(frames: List[pd.DataFrame], columns: List[str]) -> pd.DataFrame:
    if not frames:
        return pd.DataFrame(columns=columns)
    return pd.concat(frames, ignore_index=True)


def _fit_transect_averages(outputs: PipelineOutputs, analysis: AnalysisParams) -> None:
    """
    Average each unit's counts over its transects per year and fit log(count)
    on year by OLS. Used when the mixed model is unreliable for a study area.
    """
    config = outputs.config
    keys = list(config.unit_columns) + ["year"]
    averaged = (
        outputs.analysis_counts.groupby(keys, sort=True)[config.count_column]
        .mean()
        .reset_index()
    )
    curves: List[pd.DataFrame] = []
    for label, _key, records in _iter_units(averaged, config.unit_columns):
        outputs.transect_average_records[label] = records
        model = TransectAverageModel(config.count_column, log_offset=config.log_offset)
        try:
            fitted = model.fit(records, label)
            curves.append(fitted_curve(fitted, step=analysis.year_step))
            diag = diagnose_residuals(
                fitted, reps=analysis.dw_reps, seed=analysis.dw_seed
            )
        except ModelFitError as e:
            outputs.failures[f"{label} (transect average)"] = str(e)
            logger.warning(f"Skipping transect average for {label}: {e}")
            continue
        outputs.transect_average[label] = fitted
        outputs.transect_average_diagnostics[label] = diag
    outputs.transect_average_curves = _concat_or_empty(
        curves, ["unit", "year", "pred_mean"]
    )


# -------------------------
# Result tables
# -------------------------
def build_slope_table(outputs: PipelineOutputs, transect_average: bool = False) -> pd.DataFrame:
    """
    One row per unit: key columns, model kind, slope, SE, p-value (log scale).
    Failed units are listed with missing estimates and the error in `note`.
    """
    models = outputs.transect_average if transect_average else outputs.models
    labels = (
        outputs.transect_average_records if transect_average else outputs.unit_records
    )
    suffix = " (transect average)" if transect_average else ""
    rows: List[Dict[str, Any]] = []
    for label in labels:
        row: Dict[str, Any] = {"unit": label, **outputs.unit_keys.get(label, {})}
        fitted = models.get(label)
        if fitted is None:
            row.update(
                model=None,
                slope=np.nan,
                slope_se=np.nan,
                p_value=np.nan,
                r_squared=np.nan,
                n_obs=np.nan,
                note=outputs.failures.get(label + suffix, "not fitted"),
            )
        else:
            row.update(
                model=fitted.kind.value,
                slope=fitted.slope,
                slope_se=fitted.slope_se,
                p_value=fitted.p_value,
                r_squared=np.nan if fitted.r_squared is None else fitted.r_squared,
                n_obs=fitted.n_obs,
                note="; ".join(fitted.messages),
            )
        rows.append(row)
    return pd.DataFrame(rows)


def build_diagnostics_table(
    diagnostics: Dict[str, ResidualDiagnostics],
) -> pd.DataFrame:
    rows = [
        {
            "unit": d.unit,
            "n_years": d.n_years,
            "durbin_watson": d.durbin_watson,
            "autocorrelation": d.autocorrelation,
            "p_value_resampled": d.p_value_resampled,
            "p_value_positive": d.p_value_positive,
            "p_value_negative": d.p_value_negative,
            "note": d.note or "",
        }
        for d in diagnostics.values()
    ]
    return pd.DataFrame(rows)


def result_tables(outputs: PipelineOutputs) -> Dict[str, pd.DataFrame]:
    """All tabular artifacts of a run keyed by file stem."""
    count_col = outputs.config.count_column
    tables = {
        "counts": outputs.imputed,
        "slopes": build_slope_table(outputs),
        "fitted-curves": outputs.curves,
        "residual-diagnostics": build_diagnostics_table(outputs.diagnostics),
    }
    if outputs.analysis_counts is not outputs.imputed:
        tables[f"mean-{count_col}"] = outputs.analysis_counts
    if outputs.config.transect_average:
        tables["slopes-transect-average"] = build_slope_table(
            outputs, transect_average=True
        )
        tables["fitted-curves-transect-average"] = outputs.transect_average_curves
        tables["residual-diagnostics-transect-average"] = build_diagnostics_table(
            outputs.transect_average_diagnostics
        )
    if not outputs.transect_coverage.empty:
        tables["transects-without-surveys"] = outputs.transect_coverage
    return tables


# -------------------------
# Plotting
# -------------------------
class PlotLayer(IntFlag):
    # Imputed counts per transect
    DATA_POINTS = 1 << 0
    # Join each transect's yearly counts
    DATA_LINES = 1 << 1

    # Back-transformed population-level fit
    FITTED_CURVE = 1 << 2
    # "Slope (on log scale)" annotation
    SLOPE_TEXT = 1 << 3
    # Transect-averaged counts and their OLS fit
    TRANSECT_AVERAGE = 1 << 4

    # Residuals on the log scale, per record and per-year mean
    RESIDUALS = 1 << 5
    RESIDUAL_MEANS = 1 << 6

    LEGEND = 1 << 7

    # Presets
    NONE = 0
    PRELIMINARY = DATA_POINTS | DATA_LINES | LEGEND
    SUMMARY = DATA_POINTS | FITTED_CURVE | SLOPE_TEXT | LEGEND
    RESIDUAL = RESIDUALS | RESIDUAL_MEANS | LEGEND
    ALL_COUNTS = (
        DATA_POINTS | DATA_LINES | FITTED_CURVE | SLOPE_TEXT | TRANSECT_AVERAGE | LEGEND
    )
    DEFAULT = SUMMARY


_COUNT_LAYERS = (
    PlotLayer.DATA_POINTS
    | PlotLayer.DATA_LINES
    | PlotLayer.FITTED_CURVE
    | PlotLayer.SLOPE_TEXT
    | PlotLayer.TRANSECT_AVERAGE
)
_RESIDUAL_LAYERS = PlotLayer.RESIDUALS | PlotLayer.RESIDUAL_MEANS


def _plot_layers_suffix(flags: PlotLayer) -> str:
    """
    Stable, human-readable filename suffix for a layer selection: the preset
    name on an exact match, else the '+'-joined atomic names in canonical order.

    Example:
      PlotLayer.SUMMARY -> "SUMMARY"
      PlotLayer.DATA_POINTS | PlotLayer.LEGEND -> "DATA_POINTS+LEGEND"
    """
    for name in ("DEFAULT", "PRELIMINARY", "RESIDUAL", "ALL_COUNTS", "NONE"):
        if flags == getattr(PlotLayer, name):
            # DEFAULT aliases SUMMARY; report the descriptive name
            return "SUMMARY" if name == "DEFAULT" else name

    atomic_order = [
        "DATA_POINTS",
        "DATA_LINES",
        "FITTED_CURVE",
        "SLOPE_TEXT",
        "TRANSECT_AVERAGE",
        "RESIDUALS",
        "RESIDUAL_MEANS",
        "LEGEND",
    ]
    tokens = [name for name in atomic_order if flags & getattr(PlotLayer, name)]
    return "+".join(tokens) if tokens else "NONE"


@dataclass
class PlotParams:
    """
    Plotting controls: layer selection, y scale and optional axis bounds.

    x_min/x_max/y_min/y_max are applied to every panel; one-sided limits are
    allowed. symlog_y draws counts on a symmetric-log axis so zero counts stay
    visible next to large ones.
    """

    plot_layers: PlotLayer = PlotLayer.DEFAULT
    symlog_y: bool = False
    x_min: Optional[float] = None
    x_max: Optional[float] = None
    y_min: Optional[float] = None
    y_max: Optional[float] = None


def slope_annotation(fitted: FittedModel) -> str:
    return (
        f"Slope (on log scale) : {fitted.slope:.3f} ( SE {fitted.slope_se:.3f} )\n"
        f"p : {fitted.p_value:.3f}"
    )


def _draw_count_panel(
    ax, label: str, outputs: PipelineOutputs, flags: PlotLayer
) -> None:
    count_col = outputs.config.count_column
    records = outputs.unit_records[label]

    if flags & (PlotLayer.DATA_POINTS | PlotLayer.DATA_LINES):
        for transect, grp in records.groupby("transect", sort=True):
            grp = grp.sort_values("year")
            if flags & PlotLayer.DATA_LINES:
                line = ax.plot(grp["year"], grp[count_col], linewidth=0.8, alpha=0.7)
                color = line[0].get_color()
            else:
                color = None
            if flags & PlotLayer.DATA_POINTS:
                ax.scatter(
                    grp["year"], grp[count_col], s=14, color=color, label=f"T {transect}"
                )

    fitted = outputs.models.get(label)
    if flags & PlotLayer.FITTED_CURVE and fitted is not None:
        curve = outputs.curves[outputs.curves["unit"] == label]
        ax.plot(
            curve["year"], curve["pred_mean"], color="white", linewidth=2, label="fit"
        )

    avg = outputs.transect_average.get(label)
    if flags & PlotLayer.TRANSECT_AVERAGE and avg is not None:
        avg_records = outputs.transect_average_records[label]
        ax.scatter(
            avg_records["year"],
            avg_records[count_col],
            marker="D",
            s=18,
            color="orange",
            label="transect mean",
        )
        avg_curve = outputs.transect_average_curves[
            outputs.transect_average_curves["unit"] == label
        ]
        ax.plot(
            avg_curve["year"],
            avg_curve["pred_mean"],
            color="orange",
            linestyle="--",
            label="fit (transect mean)",
        )

    if flags & PlotLayer.SLOPE_TEXT and fitted is not None:
        ax.text(
            0.02,
            0.97,
            slope_annotation(fitted),
            transform=ax.transAxes,
            va="top",
            fontsize=8,
        )
    ax.set_ylabel(count_col)


def _draw_residual_panel(ax, label: str, outputs: PipelineOutputs, flags: PlotLayer) -> None:
    fitted = outputs.models.get(label)
    if fitted is None:
        return
    year_col = fitted.model.year_column
    if flags & PlotLayer.RESIDUALS:
        ax.scatter(
            fitted.data[year_col], fitted.residuals, s=12, alpha=0.7, label="residual"
        )
    diag = outputs.diagnostics.get(label)
    if flags & PlotLayer.RESIDUAL_MEANS and diag is not None:
        yr = diag.year_residuals
        ax.plot(yr["year"], yr["mean_resid"], marker="o", color="white", label="yearly mean")
        if np.isfinite(diag.durbin_watson):
            ax.text(
                0.02,
                0.97,
                f"DW = {diag.durbin_watson:.2f}, p = {diag.p_value_resampled:.3f}",
                transform=ax.transAxes,
                va="top",
                fontsize=8,
            )
    ax.axhline(0.0, color="grey", linewidth=0.8, linestyle=":")
    ax.set_ylabel("residual (log scale)")


def render_outputs(
    outputs: PipelineOutputs,
    output_svg: str = "plot.svg",
    plot_params: Optional[PlotParams] = None,
) -> str:
    """
    Draw one panel per unit and save the figure as SVG. Returns the output path.

    Count layers and residual layers use different y axes and cannot be mixed
    in one PlotParams (ValueError). Units whose fit failed show their data with
    a "fit failed" note.
    """
    if plot_params is None:
        raise TypeError("render_outputs requires plot_params (PlotParams)")
    flags = plot_params.plot_layers
    residual_plot = bool(flags & _RESIDUAL_LAYERS)
    if residual_plot and flags & _COUNT_LAYERS:
        raise ValueError(
            f"Plot layers {_plot_layers_suffix(flags)} mix count and residual layers"
        )

    labels = list(outputs.unit_records)
    n = max(1, len(labels))
    ncols = min(3, n)
    nrows = ceil(n / ncols)

    plt.style.use("dark_background")
    fig, axes = plt.subplots(
        nrows, ncols, figsize=(5.0 * ncols, 3.6 * nrows), squeeze=False
    )
    flat_axes = axes.ravel()
    if not labels:
        flat_axes[0].text(0.5, 0.5, "no units to plot", ha="center", va="center")

    for ax, label in zip(flat_axes, labels):
        if residual_plot:
            _draw_residual_panel(ax, label, outputs, flags)
        else:
            _draw_count_panel(ax, label, outputs, flags)
            if plot_params.symlog_y:
                ax.set_yscale("symlog", linthresh=1.0)
        title = label
        if label in outputs.models:
            title += f"\n{outputs.models[label].kind.value}"
        elif label in outputs.failures:
            title += "\nfit failed"
        ax.set_title(title, fontsize=9)
        ax.set_xlabel("year")
        ax.set_xlim(left=plot_params.x_min, right=plot_params.x_max)
        ax.set_ylim(bottom=plot_params.y_min, top=plot_params.y_max)
        if flags & PlotLayer.LEGEND and ax.get_legend_handles_labels()[0]:
            ax.legend(fontsize=7, loc="upper right")
    if labels:
        for ax in flat_axes[len(labels):]:
            ax.set_visible(False)

    fig.suptitle(f"{outputs.config.name}: {outputs.config.count_column}")
    fig.tight_layout()
    fig.savefig(output_svg, format="svg")
    plt.close(fig)
    return output_svg


def render_plots(
    list_plot_params: List[PlotParams],
    outputs: PipelineOutputs,
    short_hash: str,
    output_dir: Optional[str] = None,
) -> List[str]:
    """
    Render one SVG per PlotParams. Returns artifact paths.

    Filenames: plot-{short_hash}-{ii}-{suffix}.svg, ii zero-based and zero-padded.
    """
    n = len(list_plot_params)
    pad = max(2, len(str(max(0, n - 1))))
    artifact_paths: List[str] = []
    for idx, pp in enumerate(list_plot_params):
        suffix = _plot_layers_suffix(pp.plot_layers)
        filename = f"plot-{short_hash}-{idx:0{pad}}-{suffix}.svg"
        output_path = Path(output_dir) / filename if output_dir else Path(filename)
        render_outputs(outputs, output_svg=str(output_path), plot_params=pp)
        artifact_paths.append(str(output_path))
    return artifact_paths


# -------------------------
# Defaults, identity, manifest, report
# -------------------------
def get_default_params() -> Tuple[LoadParams, AnalysisParams, List[PlotParams]]:
    """
    Policy defaults: egg-mass pipeline, standard sheet names, and the three
    canonical plots (preliminary, summary, residual).
    """
    load = LoadParams(
        workbook_paths=[],
        survey_sheet=GENERAL_SURVEY_SHEET,
        transect_sheet=TRANSECT_SHEET,
        date_format=DEFAULT_DATE_FORMAT,
        header_map={},
    )
    analysis = AnalysisParams()
    plot_defaults = [
        PlotParams(plot_layers=PlotLayer.PRELIMINARY, symlog_y=True),
        PlotParams(plot_layers=PlotLayer.SUMMARY),
        PlotParams(plot_layers=PlotLayer.RESIDUAL),
    ]
    return load, analysis, plot_defaults


def build_run_identity(
    load: LoadParams, analysis: AnalysisParams
) -> Tuple[List[str], str, str, dict]:
    """
    Returns (abs_input_paths, short_hash, full_hash, effective_params)
    """
    abs_inputs = [normalize_abs_posix(p) for p in load.workbook_paths]
    config = resolve_pipeline_config(analysis)
    effective_params = build_effective_parameters(
        load=load, analysis=analysis, pipeline=config
    )
    short_hash, full_hash = canonical_json_hash(
        {"absolute_input_paths": abs_inputs, "effective_parameters": effective_params}
    )
    return abs_inputs, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_inputs: List[str],
    outputs: PipelineOutputs,
    effective_params: dict,
    hashes: Tuple[str, str],
    artifact_paths: Dict[str, List[str]],
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_paths": abs_inputs,
        "pipeline": outputs.config.name,
        "observation_rows": int(len(outputs.observations)),
        "invalid_dates": int(outputs.observations.attrs.get("invalid_dates", 0)),
        "aggregated_rows": int(len(outputs.counts)),
        "imputed_rows": int(len(outputs.imputed)),
        "imputed_zero_rows": int(len(outputs.imputed) - len(outputs.counts)),
        "units_fitted": sorted(outputs.models),
        "units_failed": dict(sorted(outputs.failures.items())),
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": artifact_paths,
    }


def _fmt_head_tail(df: pd.DataFrame, n: int = 10) -> str:
    """Head and tail without index; only the head when rows <= 2n."""
    if df is None or df.empty:
        return "(no rows)"
    head_txt = df.head(n).to_string(index=False)
    if len(df) <= 2 * n:
        return head_txt
    return f"{head_txt}\n...\n{df.tail(n).to_string(index=False)}"


def _fmt_table(df: pd.DataFrame) -> str:
    if df is None or df.empty:
        return "(no rows)"
    return df.to_string(index=False, float_format=lambda v: f"{v:.4g}")


def assemble_text_report(
    outputs: PipelineOutputs, sources: Optional[List[str]] = None
) -> str:
    """
    Plain-text report: inputs, data-quality crosstabs, counts, slopes,
    residual diagnostics and failed units.
    """
    config = outputs.config
    parts: List[str] = ["\n"]
    parts.append(f"Survey trend analysis: {config.name} ({config.target_code} -> {config.count_column})")
    if sources:
        parts.append("Workbooks: " + ", ".join(sources))
    parts.append(
        f"Observations: {len(outputs.observations)} rows; "
        f"malformed dates: {outputs.observations.attrs.get('invalid_dates', 0)}"
    )
    parts.append(
        f"Aggregated keys: {len(outputs.counts)}; after zero imputation: "
        f"{len(outputs.imputed)}"
    )
    parts.append("\n")

    for title, table in outputs.crosstabs.items():
        parts.append(f"Check: {title}")
        parts.append(table.to_string() if not table.empty else "(empty)")
        parts.append("")

    if not outputs.transect_coverage.empty:
        parts.append("Transects listed in the transect sheet with no survey rows:")
        parts.append(outputs.transect_coverage.to_string(index=False))
        parts.append("")

    parts.append(f"Counts used for model fitting ({config.count_column}):")
    parts.append(_fmt_head_tail(outputs.analysis_counts))
    parts.append("\n")

    parts.append("Trend slopes (log scale):")
    parts.append(_fmt_table(build_slope_table(outputs)))
    parts.append("")
    parts.append("Residual autocorrelation (year-averaged residuals):")
    parts.append(_fmt_table(build_diagnostics_table(outputs.diagnostics)))

    if config.transect_average:
        parts.append("")
        parts.append("Transect-average fallback, OLS of log(mean count) on year:")
        parts.append(_fmt_table(build_slope_table(outputs, transect_average=True)))
        parts.append(
            _fmt_table(build_diagnostics_table(outputs.transect_average_diagnostics))
        )

    if outputs.failures:
        parts.append("")
        parts.append("Units that could not be fitted:")
        for label, msg in sorted(outputs.failures.items()):
            parts.append(f"  {label}: {msg}")

    return "\n".join(parts)


def _orchestrate(
    params_load: LoadParams,
    params_analysis: AnalysisParams,
    list_plot_params: List[PlotParams],
    output_root: Union[str, Path] = ".",
) -> Path:
    """
    Run the full pipeline and write all artifacts into output/<timestamp>/.
    Split from main() so the CLI stays thin and tests can call this directly.
    Returns the run directory.
    """
    run_output_dir = ensure_run_dir(output_root, prefix="output")
    config = resolve_pipeline_config(params_analysis)
    abs_inputs, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_analysis
    )

    loaded = load_workbooks(params_load, config)
    outputs = run_pipeline(
        loaded.observations, config, params_analysis, transects=loaded.transects
    )

    plot_paths = render_plots(
        list_plot_params, outputs, short_hash, output_dir=str(run_output_dir)
    )
    table_paths = write_tables(result_tables(outputs), run_output_dir, short_hash)

    report = assemble_text_report(outputs, loaded.sources)
    report_path = write_text_report(report, run_output_dir, short_hash)

    manifest = build_manifest_dict(
        abs_inputs=abs_inputs,
        outputs=outputs,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths={
            "plot_svgs": plot_paths,
            "tables": [str(p) for p in table_paths],
            "report": str(report_path),
        },
    )
    write_manifest(str(run_output_dir / f"manifest-{short_hash}.json"), manifest)

    print(report)
    return run_output_dir


# -------------------------
# CLI
# -------------------------
def _parse_plot_layers(spec: str) -> PlotLayer:
    """
    Accept a preset name (e.g. 'SUMMARY') or '+'-joined atomic names
    (e.g. 'DATA_POINTS+FITTED_CURVE'), case-insensitive.
    """
    s = spec.strip().upper()
    if s in PlotLayer.__members__:
        return PlotLayer[s]
    flags = PlotLayer(0)
    for token in s.split("+"):
        token = token.strip()
        if not token:
            continue
        if token not in PlotLayer.__members__:
            raise ValueError(f"Unknown plot layer token: {token}")
        flags |= PlotLayer[token]
    return flags


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _apply_plot_key(params: PlotParams, key: str, value: Any) -> None:
    if key == "layers":
        params.plot_layers = _parse_plot_layers(str(value))
    elif key == "symlog_y":
        params.symlog_y = _parse_bool(value)
    elif key in ("x_min", "x_max", "y_min", "y_max"):
        setattr(params, key, None if value is None else float(value))
    else:
        raise ValueError(f"Unknown key in plot spec: {key}")


def _parse_plot_spec_kv(spec: str, default: PlotParams) -> PlotParams:
    """
    Parse a plot specification in key=value[,key=value...] format.
    """
    params = replace(default)
    for kv in spec.split(","):
        if not kv.strip():
            continue
        if "=" not in kv:
            raise ValueError(f"Invalid key=value pair in plot spec: {kv!r}")
        key, value = kv.split("=", 1)
        _apply_plot_key(params, key.strip(), value.strip())
    return params


def _parse_plot_spec_json(spec: str, default: PlotParams) -> PlotParams:
    """
    Parse a plot specification as a JSON object. null bounds mean "no limit".
    """
    import json

    spec_dict = json.loads(spec)
    if not isinstance(spec_dict, dict):
        raise ValueError(f"JSON plot spec must be an object, got {type(spec_dict).__name__}")
    params = replace(default)
    for key, value in spec_dict.items():
        _apply_plot_key(params, key, value)
    return params


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="survey-trends",
        description="Survey trend pipeline (load -> aggregate -> impute -> fit -> diagnose -> plot).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also SURVEY_TRENDS_DEBUG=1).",
    )
    parser.add_argument(
        "--output-root",
        type=str,
        default=".",
        help="Directory under which output/<timestamp>/ is created.",
    )

    # LoadParams
    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument(
        "--workbook",
        action="append",
        required=True,
        dest="workbooks",
        help="Survey workbook (.xls/.xlsx). Repeatable; rows are combined.",
    )
    g_load.add_argument("--survey-sheet", type=str, help="Observation sheet name.")
    g_load.add_argument("--transect-sheet", type=str, help="Transect sheet name.")
    g_load.add_argument(
        "--no-transect-sheet",
        action="store_true",
        help="Do not read the transect sheet.",
    )
    g_load.add_argument("--date-format", type=str, help="strptime format of text dates.")
    g_load.add_argument(
        "--header-map",
        action="append",
        metavar="OLD:NEW",
        help="Map sanitized header OLD to canonical NEW. Repeatable; format OLD:NEW.",
    )

    # AnalysisParams
    g_an = parser.add_argument_group("AnalysisParams")
    g_an.add_argument(
        "--pipeline", choices=sorted(PIPELINES), help="Analysis preset to run."
    )
    g_an.add_argument(
        "--log-offset", type=float, help="Override the preset's constant added before logs."
    )
    g_an.add_argument(
        "--transect-average",
        dest="transect_average",
        action="store_true",
        default=None,
        help="Also fit the transect-average OLS fallback.",
    )
    g_an.add_argument(
        "--no-transect-average",
        dest="transect_average",
        action="store_false",
        help="Skip the transect-average OLS fallback.",
    )
    g_an.add_argument("--year-step", type=float, help="Year grid step of fitted curves.")
    g_an.add_argument(
        "--dw-reps", type=int, help="Resamples for the Durbin-Watson p-value."
    )
    g_an.add_argument("--seed", type=int, dest="dw_seed", help="Resampling seed.")
    g_an.add_argument(
        "--verbose", action="store_true", help="Log per-step row accounting."
    )

    # PlotParams
    g_plot = parser.add_argument_group("PlotParams")
    g_plot.add_argument(
        "--plot-spec",
        action="append",
        help="Plot specification in key=value[,key=value...] format. Repeatable.",
    )
    g_plot.add_argument(
        "--plot-spec-json",
        action="append",
        help="Plot specification as a JSON object. Repeatable.",
    )
    return parser


def _parse_header_map(items: Optional[List[str]]) -> Dict[str, str]:
    header_map: Dict[str, str] = {}
    for item in items or []:
        try:
            old, new = item.split(":", 1)
        except ValueError:
            raise ValueError(f"Invalid --header-map value: '{item}'. Expected OLD:NEW")
        old = old.strip()
        new = new.strip()
        if not old or not new:
            raise ValueError(
                f"Invalid --header-map value: '{item}'. OLD and NEW must be non-empty"
            )
        header_map[old] = new
    return header_map


def _args_to_params(args) -> Tuple[LoadParams, AnalysisParams, List[PlotParams]]:
    """
    Merge CLI args over defaults; only values the user gave override defaults.
    """
    d_load, d_analysis, d_plots = get_default_params()

    def get_arg_or_default(arg_name, default):
        value = getattr(args, arg_name, None)
        return value if value is not None else default

    transect_sheet = get_arg_or_default("transect_sheet", d_load.transect_sheet)
    if getattr(args, "no_transect_sheet", False):
        transect_sheet = None

    load = LoadParams(
        workbook_paths=[Path(p).resolve() for p in (args.workbooks or [])],
        survey_sheet=get_arg_or_default("survey_sheet", d_load.survey_sheet),
        transect_sheet=transect_sheet,
        date_format=get_arg_or_default("date_format", d_load.date_format),
        header_map=_parse_header_map(getattr(args, "header_map", None)),
    )

    dw_reps = get_arg_or_default("dw_reps", d_analysis.dw_reps)
    if dw_reps < 1:
        raise ValueError("Invalid --dw-reps: must be a positive integer")
    year_step = get_arg_or_default("year_step", d_analysis.year_step)
    if year_step <= 0:
        raise ValueError("Invalid --year-step: must be positive")

    analysis = AnalysisParams(
        pipeline=get_arg_or_default("pipeline", d_analysis.pipeline),
        log_offset=get_arg_or_default("log_offset", d_analysis.log_offset),
        transect_average=get_arg_or_default(
            "transect_average", d_analysis.transect_average
        ),
        year_step=year_step,
        dw_reps=dw_reps,
        dw_seed=get_arg_or_default("dw_seed", d_analysis.dw_seed),
        verbose=bool(getattr(args, "verbose", False)) or d_analysis.verbose,
    )
    # Validates pipeline name and overrides early
    resolve_pipeline_config(analysis)

    plot_params_list: List[PlotParams] = []
    for spec in getattr(args, "plot_spec", None) or []:
        # First canonical plot is the inheritance base
        plot_params_list.append(_parse_plot_spec_kv(spec, d_plots[0]))
    for spec in getattr(args, "plot_spec_json", None) or []:
        plot_params_list.append(_parse_plot_spec_json(spec, d_plots[0]))
    if not plot_params_list:
        plot_params_list = [replace(pp) for pp in d_plots]

    return load, analysis, plot_params_list


def _defaults_payload() -> dict:
    d_load, d_analysis, d_plots = get_default_params()
    return {
        "LoadParams": {
            "workbook_paths": [str(p) for p in d_load.workbook_paths],
            "survey_sheet": d_load.survey_sheet,
            "transect_sheet": d_load.transect_sheet,
            "date_format": d_load.date_format,
            "header_map": d_load.header_map,
        },
        "AnalysisParams": {
            "pipeline": d_analysis.pipeline,
            "log_offset": d_analysis.log_offset,
            "transect_average": d_analysis.transect_average,
            "year_step": d_analysis.year_step,
            "dw_reps": d_analysis.dw_reps,
            "dw_seed": d_analysis.dw_seed,
            "verbose": d_analysis.verbose,
        },
        "PlotParams": [
            {
                "plot_layers": _plot_layers_suffix(pp.plot_layers),
                "symlog_y": pp.symlog_y,
                "x_min": pp.x_min,
                "x_max": pp.x_max,
                "y_min": pp.y_min,
                "y_max": pp.y_max,
            }
            for pp in d_plots
        ],
        "Pipelines": {
            name: {
                "target_code": cfg.target_code,
                "count_column": cfg.count_column,
                "dimensions": list(cfg.dimensions),
                "log_offset": cfg.log_offset,
                "all_species": cfg.all_species,
                "transect_average": cfg.transect_average,
            }
            for name, cfg in PIPELINES.items()
        },
    }


def main() -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import sys

    argv = sys.argv[1:]

    # --print-defaults must work without --workbook
    if "--print-defaults" in argv:
        import json

        print(json.dumps(_defaults_payload(), indent=2))
        return

    parser = _build_cli_parser()
    args = parser.parse_args(argv)
    debug_mode = bool(
        getattr(args, "debug", False) or os.getenv("SURVEY_TRENDS_DEBUG", "") == "1"
    )
    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        params_load, params_analysis, plot_params_list = _args_to_params(args)
        _orchestrate(
            params_load,
            params_analysis,
            plot_params_list,
            output_root=args.output_root,
        )
    except (FileNotFoundError, ValueError, TypeError, WorkbookProcessingError) as e:
        # Concise, user-facing errors for user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set SURVEY_TRENDS_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
