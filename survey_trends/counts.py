"""
Observation cleaning, aggregation and zero-imputation.

Pure functions over pandas frames:
- sanitize_column_names() / apply_header_map() / convert_date_column() /
  title_case_labels() / normalize_observations()  (Normalizer)
- aggregate_counts()                               (Aggregator)
- complete_key_set() / impute_zero_counts() / average_counts()  (Imputer)

Every step returns a new frame; inputs are never mutated. Data-quality
problems (malformed dates, unidentified species, rows without a key) are
logged and the affected rows dropped. Key-merge violations raise KeyMergeError.
"""

from __future__ import annotations

import itertools
import logging
import re
import time
from datetime import date
from typing import Iterable, Mapping, Optional, Sequence

import pandas as pd

logger = logging.getLogger(__name__)

# Species value tagging the all-species pseudo-group
ALL_SPECIES: str = "ALL.species"

# Species codes that are data-entry errors rather than species. The misspelling
# "Unidentifed" occurs in the field workbooks as entered.
DEFAULT_EXCLUDED_SPECIES: frozenset[str] = frozenset(
    {"AMPHIBION", "Unidentifed", "Unidentified"}
)

DEFAULT_DATE_FORMAT: str = "%d-%b-%y"

# Sanitized (lower-cased) workbook header -> canonical column name
DEFAULT_HEADER_MAP: dict[str, str] = {
    "study_area_name": "site",
    "transect_label": "transect",
    "date": "date",
    "species": "species",
    "life_stage": "life_stage",
    "survey_type": "survey_type",
    "detect_type": "detect_type",
    "count": "count",
}


class SurveyDataError(Exception):
    """Base exception for survey table problems the pipeline cannot recover from."""

    pass


class KeyMergeError(SurveyDataError):
    """Raised when grouping keys are duplicated or orphaned during imputation."""

    pass


class StepResult:
    """Container for per-step row accounting and diagnostics."""

    def __init__(self, label: Optional[str] = None) -> None:
        self.label: Optional[str] = label

        self.input_rows: int = 0
        self.output_rows: int = 0
        self.excluded_rows: int = 0

        self.warnings: list[str] = []
        self.metrics: dict[str, int | float | str] = {}

        self.started_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.perf_counter()

    def stop(self) -> None:
        if self.started_at is not None:
            self.elapsed_ms = (time.perf_counter() - self.started_at) * 1000.0

    def add_warning(self, message: str) -> None:
        """Record a data-quality warning and log it."""
        self.warnings.append(message)
        logger.warning(message)

    def add_metric(self, name: str, value: int | float | str) -> None:
        self.metrics[name] = value

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.input_rows} → {self.output_rows}"]
        if self.excluded_rows:
            parts.append(f"excluded_rows={self.excluded_rows}")
        if self.warnings:
            parts.append(f"warnings={len(self.warnings)}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        if self.metrics:
            parts.append(f"metrics={self.metrics}")
        return " | ".join(parts)


# -------------------------
# Normalizer
# -------------------------
def sanitize_column_names(columns: Iterable[object]) -> list[str]:
    """
    Turn raw workbook headers into identifiers.

    Runs of characters other than letters, digits and underscore become a single
    underscore, surrounding underscores are trimmed, a name not starting with a
    letter gets an "X" prefix, and repeated names get _1, _2 suffixes.

        >>> sanitize_column_names(["Study Area Name", "Life Stage", "1st Count", "Date"])
        ['Study_Area_Name', 'Life_Stage', 'X1st_Count', 'Date']
    """
    out: list[str] = []
    seen: dict[str, int] = {}
    for raw in columns:
        name = re.sub(r"[^0-9A-Za-z_]+", "_", str(raw).strip()).strip("_")
        if not name:
            name = "X"
        elif not name[0].isalpha():
            name = f"X{name}"
        n_seen = seen.get(name, 0)
        seen[name] = n_seen + 1
        out.append(name if n_seen == 0 else f"{name}_{n_seen}")
    return out


def apply_header_map(
    df: pd.DataFrame, header_map: Optional[Mapping[str, str]] = None
) -> pd.DataFrame:
    """
    Rename columns to canonical names using a case-insensitive header map.

    Raises ValueError when two map keys target the same name and both are
    present, or when a rename would duplicate an existing column name.
    """
    header_map = DEFAULT_HEADER_MAP if header_map is None else header_map
    lower_map = {k.strip().lower(): v.strip() for k, v in header_map.items()}

    remap: dict[str, str] = {}
    for col in df.columns:
        mapped = lower_map.get(str(col).strip().lower())
        if mapped and mapped != col:
            remap[col] = mapped

    new_names = [remap.get(col, col) for col in df.columns]
    seen: set[str] = set()
    dup_targets: set[str] = set()
    for name in new_names:
        if name in seen:
            dup_targets.add(name)
        seen.add(name)
    if dup_targets:
        conflicts: dict[str, list[str]] = {}
        for col in df.columns:
            target = remap.get(col, col)
            if target in dup_targets:
                conflicts.setdefault(target, []).append(str(col))
        msg_parts = [f"'{tgt}' <= columns {cols}" for tgt, cols in conflicts.items()]
        raise ValueError(
            "Header mapping would produce duplicate column names after rename: "
            + "; ".join(msg_parts)
        )

    if remap:
        logger.debug(f"Applied header mappings: {remap}")
        return df.rename(columns=remap)
    return df.copy()


def convert_date_column(
    df: pd.DataFrame,
    date_column: str = "date",
    date_format: str = DEFAULT_DATE_FORMAT,
    year_column: str = "year",
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Parse the date column and derive a nullable integer year column.

    Text values must match date_format exactly (default day-month-year such as
    "12-Apr-13"). Cells the spreadsheet reader already delivered as dates are
    kept as-is. Anything else becomes NaT with a missing year; the number of
    such rows is logged and persisted in df.attrs["invalid_dates"].
    """
    result = StepResult(label="convert_date_column")
    result.start()
    result.input_rows = len(df)
    out = df.copy()

    if date_column not in out.columns:
        raise ValueError(
            f"Missing required column '{date_column}'. Found columns: {list(out.columns)}"
        )

    series = out[date_column]
    if pd.api.types.is_datetime64_any_dtype(series):
        parsed = series
    else:
        is_text = series.map(lambda v: isinstance(v, str))
        is_native = series.map(lambda v: isinstance(v, date))
        parsed = pd.Series(pd.NaT, index=series.index, dtype="datetime64[ns]")
        if is_native.any():
            parsed.loc[is_native] = pd.to_datetime(series[is_native])
        if is_text.any():
            parsed.loc[is_text] = pd.to_datetime(
                series[is_text].str.strip(),
                format=date_format,
                errors="coerce",
                exact=True,
            )

    invalid = parsed.isna() & series.notna()
    n_invalid = int(invalid.sum())
    if n_invalid:
        samples = series[invalid].astype(str).unique().tolist()[:5]
        result.add_warning(
            f"Found {n_invalid} malformed dates in column '{date_column}' "
            f"(expected format {date_format!r}); e.g. {samples}. "
            "Their year is unknown and the rows will not be aggregated."
        )
    result.add_metric("invalid_dates", n_invalid)

    out[date_column] = parsed
    out[year_column] = parsed.dt.year.astype("Int64")
    out.attrs["invalid_dates"] = n_invalid

    result.output_rows = len(out)
    result.stop()
    if verbose:
        logger.info(result.summarize())
    return out


def title_case_labels(
    df: pd.DataFrame, columns: Sequence[str] = ("site",)
) -> pd.DataFrame:
    """
    Collapse case variants ("alice lake", "ALICE LAKE") of free-text labels to
    title case. Misspellings are not corrected; check the crosstabs.
    """
    out = df.copy()
    for col in columns:
        if col in out.columns:
            mask = out[col].map(lambda v: isinstance(v, str))
            out.loc[mask, col] = out.loc[mask, col].str.strip().str.title()
    return out


def normalize_observations(
    raw: pd.DataFrame,
    header_map: Optional[Mapping[str, str]] = None,
    date_format: str = DEFAULT_DATE_FORMAT,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Full Normalizer pass: sanitize headers, map them to canonical names, strip
    whitespace in text cells, title-case site names, parse dates and derive year.
    """
    df = raw.copy()
    df.columns = sanitize_column_names(df.columns)
    df = apply_header_map(df, header_map)
    for col in ("site", "transect", "species", "life_stage", "survey_type", "detect_type"):
        if col in df.columns:
            mask = df[col].map(lambda v: isinstance(v, str))
            df.loc[mask, col] = df.loc[mask, col].str.strip()
    df = title_case_labels(df, columns=("site",))
    return convert_date_column(df, date_format=date_format, verbose=verbose)


# -------------------------
# Aggregator
# -------------------------
def aggregate_counts(
    df: pd.DataFrame,
    group_columns: Sequence[str],
    target_code: str,
    stage_column: str,
    count_column: str,
    survey_filter: Optional[tuple[str, str]] = None,
    excluded_species: Iterable[str] = DEFAULT_EXCLUDED_SPECIES,
    species_column: str = "species",
    all_species: bool = False,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Count rows whose stage_column equals target_code within each observed group.

    Steps:
    - survey_filter=(column, value) keeps only rows of that survey type.
    - Rows whose species is in excluded_species are dropped (logged).
    - Rows with a missing key value (e.g. year unknown after a malformed date)
      are dropped (logged).
    - Every observed group yields one row, with count 0 when none of its rows
      carried the target code.
    - all_species=True appends one ALL_SPECIES row per group of the remaining
      keys, counting the target code across all kept species.

    Returns a frame with columns [*group_columns, count_column], sorted by key.
    """
    result = StepResult(label=f"aggregate_counts[{target_code}]")
    result.start()
    result.input_rows = len(df)

    group_columns = list(group_columns)
    excluded_species = list(excluded_species)
    required = list(group_columns) + [stage_column]
    if survey_filter is not None:
        required.append(survey_filter[0])
    if excluded_species and species_column not in required:
        required.append(species_column)
    missing = [c for c in dict.fromkeys(required) if c not in df.columns]
    if missing:
        raise ValueError(
            f"Missing required columns: {', '.join(missing)}. Found columns: {list(df.columns)}"
        )
    if all_species and species_column not in group_columns:
        raise ValueError(
            f"all_species requires '{species_column}' among group columns {group_columns}"
        )

    work = df
    if survey_filter is not None:
        col, value = survey_filter
        work = work[work[col] == value]
        result.add_metric("survey_filtered_rows", int(len(df) - len(work)))

    if excluded_species:
        excluded = work[species_column].isin(excluded_species)
    else:
        excluded = pd.Series(False, index=work.index)
    if excluded.any():
        codes = work.loc[excluded, species_column].value_counts().to_dict()
        result.add_warning(
            f"Dropped {int(excluded.sum())} rows with unidentified species codes: {codes}"
        )
        work = work[~excluded]

    missing_key = work[group_columns].isna().any(axis=1)
    if missing_key.any():
        result.add_warning(
            f"Dropped {int(missing_key.sum())} rows with a missing value in {group_columns}"
        )
        work = work[~missing_key]
    result.excluded_rows = int(len(df) - len(work))

    work = work.assign(_match=(work[stage_column] == target_code).astype("int64"))
    if "year" in group_columns:
        work = work.assign(year=work["year"].astype("int64"))

    counts = (
        work.groupby(group_columns, sort=True)["_match"]
        .sum()
        .reset_index()
        .rename(columns={"_match": count_column})
    )
    if all_species:
        site_keys = [c for c in group_columns if c != species_column]
        totals = (
            work.groupby(site_keys, sort=True)["_match"]
            .sum()
            .reset_index()
            .rename(columns={"_match": count_column})
        )
        totals[species_column] = ALL_SPECIES
        counts = pd.concat([counts, totals[group_columns + [count_column]]])
        counts = counts.sort_values(group_columns, key=_sort_key).reset_index(drop=True)

    counts[count_column] = counts[count_column].astype("int64")
    result.output_rows = len(counts)
    result.add_metric("target_matches", int(work["_match"].sum()))
    result.stop()
    if verbose:
        logger.info(result.summarize())
    return counts[group_columns + [count_column]]


def _sort_key(col: pd.Series) -> pd.Series:
    # Mixed object columns (e.g. species plus ALL_SPECIES) sort as text
    if col.dtype == object:
        return col.astype(str)
    return col


# -------------------------
# Imputer
# -------------------------
def _levels(series: pd.Series) -> list:
    return series.dropna().drop_duplicates().sort_values(key=_sort_key).tolist()


def complete_key_set(
    counts: pd.DataFrame,
    dimensions: Sequence[str],
    within: Optional[Sequence[str]] = None,
    pooled: Optional[Mapping[str, Sequence[str]]] = None,
    extra_keys: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Enumerate the complete key set from values present in `counts`.

    Without `within`, this is the Cartesian product of the distinct values of
    every dimension. With `within`, the remaining dimensions are crossed
    separately inside each observed combination of the `within` dimensions,
    e.g. survey dates are only crossed with transects of the same site and year.

    `pooled` maps a remaining dimension to a subset of `within` whose groups
    supply its levels instead: {"transect": ("site",)} crosses every transect
    seen at a site in any year with each year's dates, so a transect silent
    for a whole year still gets zero rows. `extra_keys` rows (e.g. the
    transect sheet) add levels to the matching `within` combination. Only
    combinations of `within` present in `counts` are enumerated.
    """
    dims = list(dimensions)
    if not within:
        levels = [_levels(counts[d]) for d in dims]
        return pd.DataFrame(list(itertools.product(*levels)), columns=dims)

    within = list(within)
    unknown = [d for d in within if d not in dims]
    if unknown:
        raise ValueError(f"within dimensions {unknown} are not among {dims}")
    free = [d for d in dims if d not in within]
    pooled = dict(pooled or {})
    for dim, by in pooled.items():
        if dim not in free or not set(by) <= set(within):
            raise ValueError(
                f"pooled dimension {dim!r} must be one of {free} pooled by a subset of {within}"
            )

    pool_levels: dict[str, dict] = {}
    for dim, by in pooled.items():
        by = list(by)
        if not by:
            pool_levels[dim] = {(): counts[dim]}
            continue
        pool_levels[dim] = {
            (k if isinstance(k, tuple) else (k,)): grp[dim]
            for k, grp in counts.groupby(by, sort=False)
        }

    extra_levels: dict[tuple, pd.DataFrame] = {}
    if extra_keys is not None and not extra_keys.empty and set(within) <= set(extra_keys.columns):
        extra = extra_keys.dropna(subset=within)
        for k, grp in extra.groupby(within, sort=False):
            extra_levels[k if isinstance(k, tuple) else (k,)] = grp

    rows: list[tuple] = []
    for parent, grp in counts.groupby(within, sort=True):
        parent = parent if isinstance(parent, tuple) else (parent,)
        fixed = dict(zip(within, parent))
        extra = extra_levels.get(parent)
        per_dim = []
        for d in free:
            if d in pooled:
                pool_key = tuple(fixed[b] for b in pooled[d])
                values = pool_levels[d][pool_key]
            else:
                values = grp[d]
            if extra is not None and d in extra.columns:
                values = pd.concat([values, extra[d]], ignore_index=True)
            per_dim.append(_levels(values))
        for combo in itertools.product(*per_dim):
            key = {**fixed, **dict(zip(free, combo))}
            rows.append(tuple(key[d] for d in dims))
    return pd.DataFrame(rows, columns=dims)


def impute_zero_counts(
    counts: pd.DataFrame,
    dimensions: Sequence[str],
    count_column: str,
    within: Optional[Sequence[str]] = None,
    pooled: Optional[Mapping[str, Sequence[str]]] = None,
    extra_keys: Optional[pd.DataFrame] = None,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Left-join aggregated counts onto the complete key set, filling 0 where a
    key has no count. `within`, `pooled` and `extra_keys` shape the key set as
    in complete_key_set.

    The join is a dictionary lookup keyed on the full dimension tuple. Raises
    KeyMergeError when the input repeats a key, when an input key is missing
    from the complete key set, or when the output would repeat a key. Output is
    sorted by key, so re-running on the output reproduces it exactly.
    """
    result = StepResult(label=f"impute_zero_counts[{count_column}]")
    result.start()
    result.input_rows = len(counts)

    dims = list(dimensions)
    missing = [c for c in dims + [count_column] if c not in counts.columns]
    if missing:
        raise ValueError(
            f"Missing required columns: {', '.join(missing)}. Found columns: {list(counts.columns)}"
        )

    dup = counts.duplicated(dims, keep=False)
    if dup.any():
        raise KeyMergeError(
            f"Aggregated counts repeat {int(dup.sum())} keys over {dims}: "
            f"{counts.loc[dup, dims].head(5).to_dict('records')}"
        )

    keys = complete_key_set(counts, dims, within, pooled=pooled, extra_keys=extra_keys)
    lookup = {
        row[:-1]: row[-1]
        for row in counts[dims + [count_column]].itertuples(index=False, name=None)
    }
    key_tuples = list(keys.itertuples(index=False, name=None))
    key_set = set(key_tuples)
    orphans = [k for k in lookup if k not in key_set]
    if orphans:
        raise KeyMergeError(
            f"{len(orphans)} count keys are outside the complete key set: {orphans[:5]}"
        )

    filled = [lookup.get(k, 0) for k in key_tuples]
    out = keys.assign(**{count_column: pd.to_numeric(pd.Series(filled, dtype=object))})
    if out.duplicated(dims).any():
        raise KeyMergeError(f"Complete key set over {dims} contains duplicate keys")

    n_imputed = len(out) - len(lookup)
    result.output_rows = len(out)
    result.add_metric("imputed_zero_rows", int(n_imputed))
    result.stop()
    if verbose:
        logger.info(result.summarize())
    return out


def average_counts(
    counts: pd.DataFrame, over: str, count_column: str
) -> pd.DataFrame:
    """Collapse one dimension by averaging the counts over its values."""
    keys = [c for c in counts.columns if c not in (over, count_column)]
    return (
        counts.groupby(keys, sort=True)[count_column]
        .mean()
        .reset_index()[keys + [count_column]]
    )


# -------------------------
# Data-quality checks
# -------------------------
def crosstab_checks(
    df: pd.DataFrame, pairs: Sequence[tuple[str, str]]
) -> dict[str, pd.DataFrame]:
    """
    Frequency tables used to eyeball spelling variants and coverage gaps.
    Pairs whose columns are absent are skipped.
    """
    tables: dict[str, pd.DataFrame] = {}
    for row_col, col_col in pairs:
        if row_col in df.columns and col_col in df.columns:
            tables[f"{row_col} x {col_col}"] = pd.crosstab(
                df[row_col].astype(object).fillna("<missing>"),
                df[col_col].astype(object).fillna("<missing>"),
            )
    return tables


def check_transect_coverage(
    observations: pd.DataFrame,
    transects: pd.DataFrame,
    keys: Sequence[str] = ("site", "year", "transect"),
) -> pd.DataFrame:
    """
    Return (site, year, transect) rows listed in the transect sheet that never
    appear in the survey rows. Inside a surveyed site-year they are still
    zero-filled when passed to impute_zero_counts as extra_keys.
    """
    keys = list(keys)
    if transects is None or transects.empty or not set(keys) <= set(transects.columns):
        return pd.DataFrame(columns=keys)
    listed = transects[keys].dropna().drop_duplicates()
    seen = observations[keys].dropna().drop_duplicates()
    merged = listed.merge(seen, on=keys, how="left", indicator=True)
    absent = merged.loc[merged["_merge"] == "left_only", keys].reset_index(drop=True)
    if not absent.empty:
        logger.warning(
            f"{len(absent)} transects listed in the transect sheet have no survey rows: "
            f"{absent.to_dict('records')[:5]}"
        )
    return absent
