from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from survey_trends.counts import ALL_SPECIES
from survey_trends.main import (
    ADULT,
    EGG_MASS,
    SQUIRREL_CALLS,
    AnalysisParams,
    PlotLayer,
    PlotParams,
    assemble_text_report,
    build_slope_table,
    get_default_params,
    render_outputs,
    render_plots,
    resolve_pipeline_config,
    result_tables,
    run_pipeline,
)
from survey_trends.trends import ModelKind

YEARS = [2010, 2011, 2012, 2013, 2014, 2015]


def amphibian_observations() -> pd.DataFrame:
    """One transect, two species with egg masses and one seen only as adults."""
    wofr = [20, 15, 12, 9, 7, 5]
    nwsa = [3, 4, 2, 5, 3, 4]
    rows = []
    for year, n_wofr, n_nwsa in zip(YEARS, wofr, nwsa):
        base = {
            "site": "Alice Lake",
            "transect": "T1",
            "date": pd.Timestamp(year=year, month=4, day=15),
            "year": year,
            "survey_type": "VI",
        }
        rows += [dict(base, species="WOFR", life_stage="EG") for _ in range(n_wofr)]
        rows += [dict(base, species="NWSA", life_stage="EG") for _ in range(n_nwsa)]
        rows.append(dict(base, species="SpZ", life_stage="AD"))
    df = pd.DataFrame(rows)
    df["year"] = df["year"].astype("Int64")
    return df


def squirrel_observations() -> pd.DataFrame:
    rng = np.random.default_rng(11)
    rows = []
    for site in ("Alice Lake", "Blue Pond"):
        for year in (2013, 2014, 2015, 2016):
            for day in (5, 19):
                date = pd.Timestamp(year=year, month=6, day=day)
                for transect in ("T1", "T2"):
                    silent = site == "Blue Pond" and year == 2014 and transect == "T2"
                    n_calls = 0 if silent else int(rng.integers(2, 9))
                    base = {
                        "site": site,
                        "transect": transect,
                        "date": date,
                        "year": year,
                    }
                    rows += [dict(base, detect_type="CA") for _ in range(n_calls)]
                    # Every transect-date is surveyed, even without a call
                    rows.append(dict(base, detect_type="VI"))
    df = pd.DataFrame(rows)
    df["year"] = df["year"].astype("Int64")
    return df


@pytest.fixture(scope="module")
def egg_outputs():
    analysis = AnalysisParams(pipeline="egg-mass", dw_reps=50)
    return run_pipeline(amphibian_observations(), EGG_MASS, analysis)


def test_egg_mass_units_and_single_transect_models(egg_outputs):
    labels = set(egg_outputs.unit_records)
    assert labels == {
        f"Alice Lake / {ALL_SPECIES}",
        "Alice Lake / NWSA",
        "Alice Lake / SpZ",
        "Alice Lake / WOFR",
    }
    wofr = egg_outputs.models["Alice Lake / WOFR"]
    assert wofr.kind is ModelKind.SINGLE_TRANSECT_GLM
    assert wofr.slope < 0
    assert egg_outputs.unit_keys["Alice Lake / WOFR"] == {
        "site": "Alice Lake",
        "species": "WOFR",
    }


def test_unit_with_only_zero_counts_is_reported_not_fatal(egg_outputs):
    assert "Alice Lake / SpZ" not in egg_outputs.models
    assert "all counts are zero" in egg_outputs.failures["Alice Lake / SpZ"]
    # Imputation still produced a zero for every year of the silent species
    spz = egg_outputs.unit_records["Alice Lake / SpZ"]
    assert spz["n_eggmass"].tolist() == [0] * len(YEARS)


def test_all_species_unit_sums_species(egg_outputs):
    total = egg_outputs.unit_records[f"Alice Lake / {ALL_SPECIES}"]
    assert total["n_eggmass"].tolist() == [23, 19, 14, 14, 10, 9]


def test_slope_table_lists_every_unit(egg_outputs):
    table = build_slope_table(egg_outputs)
    assert set(table["unit"]) == set(egg_outputs.unit_records)
    assert {"site", "species", "model", "slope", "slope_se", "p_value", "note"} <= set(
        table.columns
    )
    failed = table.set_index("unit").loc["Alice Lake / SpZ"]
    assert np.isnan(failed["slope"])
    assert "all counts are zero" in failed["note"]


def test_curves_and_diagnostics_per_fitted_unit(egg_outputs):
    assert set(egg_outputs.curves["unit"]) == set(egg_outputs.models)
    assert set(egg_outputs.diagnostics) == set(egg_outputs.models)
    diag = egg_outputs.diagnostics["Alice Lake / WOFR"]
    assert diag.n_years == len(YEARS)


def test_crosstabs_include_count_pivot(egg_outputs):
    pivot = egg_outputs.crosstabs["n_eggmass by site x species x year"]
    assert list(pivot.columns) == YEARS
    assert pivot.loc[("Alice Lake", "WOFR"), 2010] == 20
    assert "survey_type x life_stage" in egg_outputs.crosstabs


def test_adult_pipeline_counts_adults():
    outputs = run_pipeline(
        amphibian_observations(), ADULT, AnalysisParams(pipeline="adult", dw_reps=20)
    )
    spz = outputs.unit_records["Alice Lake / SpZ"]
    assert spz["n_adults"].tolist() == [1] * len(YEARS)
    assert "Alice Lake / WOFR" in outputs.failures


def test_no_target_rows_after_filter_raises():
    obs = amphibian_observations().assign(survey_type="IN")
    with pytest.raises(ValueError, match="No observations"):
        run_pipeline(obs, EGG_MASS)


def test_resolve_pipeline_config_overrides():
    cfg = resolve_pipeline_config(
        AnalysisParams(pipeline="squirrel-calls", log_offset=0.5, transect_average=False)
    )
    assert cfg.log_offset == 0.5
    assert cfg.transect_average is False
    assert cfg.count_column == SQUIRREL_CALLS.count_column
    with pytest.raises(ValueError, match="Unknown pipeline"):
        resolve_pipeline_config(AnalysisParams(pipeline="owls"))
    with pytest.raises(ValueError, match="non-negative"):
        resolve_pipeline_config(AnalysisParams(pipeline="egg-mass", log_offset=-1))


def test_squirrel_pipeline_averages_dates_and_fits_fallback():
    transects = pd.DataFrame(
        {
            "site": ["Blue Pond"] * 3,
            "year": [2013] * 3,
            "transect": ["T1", "T2", "T3"],
        }
    )
    outputs = run_pipeline(
        squirrel_observations(),
        SQUIRREL_CALLS,
        AnalysisParams(pipeline="squirrel-calls", dw_reps=50),
        transects=transects,
    )
    # One record per site, year and transect after averaging over dates,
    # plus the listed but unsurveyed T3 as a zero
    counts = outputs.analysis_counts
    assert "date" not in counts.columns
    assert len(counts) == 2 * 4 * 2 + 1
    t3 = counts[counts["transect"] == "T3"]
    assert t3[["site", "year", "n_calls"]].to_dict("records") == [
        {"site": "Blue Pond", "year": 2013, "n_calls": 0.0}
    ]
    assert outputs.transect_coverage.to_dict("records") == [
        {"site": "Blue Pond", "year": 2013, "transect": "T3"}
    ]

    assert set(outputs.unit_records) == {"Alice Lake", "Blue Pond"}
    alice = outputs.models["Alice Lake"]
    assert alice.kind is ModelKind.MULTI_TRANSECT_MIXED
    assert np.isfinite(alice.slope) and np.isfinite(alice.slope_se)
    # A silent transect-year cannot be logged without an offset
    assert "log offset" in outputs.failures["Blue Pond"]

    # The transect average is positive every year, so both sites fit
    assert set(outputs.transect_average) == {"Alice Lake", "Blue Pond"}
    for fitted in outputs.transect_average.values():
        assert fitted.kind is ModelKind.TRANSECT_AVERAGE_OLS
        assert 0.0 <= fitted.r_squared <= 1.0

    tables = result_tables(outputs)
    assert {"counts", "slopes", "mean-n_calls", "slopes-transect-average"} <= set(tables)
    assert "transects-without-surveys" in tables
    fallback = tables["slopes-transect-average"]
    assert fallback["model"].unique().tolist() == ["transect-average-ols"]


def test_squirrel_transect_silent_for_a_year_counts_as_zero():
    rows = []
    for year in (2013, 2014, 2015, 2016):
        for day in (5, 19):
            base = {
                "site": "Alice Lake",
                "date": pd.Timestamp(year=year, month=6, day=day),
                "year": year,
                "detect_type": "CA",
            }
            rows += [dict(base, transect="T1") for _ in range(4)]
            if year != 2014:
                rows += [dict(base, transect="T2") for _ in range(6)]
    obs = pd.DataFrame(rows)
    obs["year"] = obs["year"].astype("Int64")

    outputs = run_pipeline(
        obs, SQUIRREL_CALLS, AnalysisParams(pipeline="squirrel-calls", dw_reps=20)
    )
    counts = outputs.analysis_counts.set_index(["year", "transect"])["n_calls"]
    assert len(counts) == 4 * 2
    assert counts.loc[(2014, "T2")] == 0
    assert counts.loc[(2015, "T2")] == 6
    # The zero reaches the model and the transect average
    assert "log offset" in outputs.failures["Alice Lake"]
    averaged = outputs.transect_average_records["Alice Lake"]
    assert averaged["n_calls"].tolist() == [5.0, 2.0, 5.0, 5.0]


def test_render_plots_writes_default_svgs(egg_outputs, tmp_path: Path):
    _, _, plot_defaults = get_default_params()
    paths = render_plots(plot_defaults, egg_outputs, "abcd1234", output_dir=str(tmp_path))
    names = [Path(p).name for p in paths]
    assert names == [
        "plot-abcd1234-00-PRELIMINARY.svg",
        "plot-abcd1234-01-SUMMARY.svg",
        "plot-abcd1234-02-RESIDUAL.svg",
    ]
    for p in paths:
        content = Path(p).read_text(encoding="utf-8")
        assert content.lstrip().startswith("<?xml")
        assert "<svg" in content


def test_render_outputs_rejects_mixed_layers(egg_outputs, tmp_path: Path):
    params = PlotParams(plot_layers=PlotLayer.FITTED_CURVE | PlotLayer.RESIDUALS)
    with pytest.raises(ValueError, match="mix count and residual"):
        render_outputs(egg_outputs, str(tmp_path / "x.svg"), params)
    with pytest.raises(TypeError):
        render_outputs(egg_outputs, str(tmp_path / "y.svg"))


def test_text_report_sections(egg_outputs):
    report = assemble_text_report(egg_outputs, ["survey_2015.xlsx"])
    assert "egg-mass (EG -> n_eggmass)" in report
    assert "Workbooks: survey_2015.xlsx" in report
    assert "Check: site x year" in report
    assert "Trend slopes (log scale):" in report
    assert "single-transect-glm" in report
    assert "Residual autocorrelation" in report
    assert "Units that could not be fitted:" in report
    assert "Alice Lake / SpZ: " in report
