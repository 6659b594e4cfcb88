import warnings

import numpy as np
import pandas as pd
import pytest

from survey_trends.trends import (
    ModelFitError,
    ModelKind,
    MultiTransectModel,
    SingleTransectModel,
    TransectAverageModel,
    _imhof_prob_below_zero,
    _warning_messages,
    diagnose_residuals,
    durbin_watson_tests,
    fit_trend,
    fitted_curve,
    select_model,
    select_model_kind,
    year_grid,
)


def single_transect_records(slope=-0.2, start=50.0, years=range(2010, 2020)):
    years = list(years)
    counts = [int(round(start * np.exp(slope * (y - years[0])))) for y in years]
    return pd.DataFrame(
        {
            "site": "Alice Lake",
            "transect": "T1",
            "year": years,
            "species": "WOFR",
            "n_eggmass": counts,
        }
    )


def multi_transect_records(slope=0.1, n_transects=4, years=range(2010, 2018), seed=7):
    rng = np.random.default_rng(seed)
    years = list(years)
    transect_effect = rng.normal(0.0, 0.5, n_transects)
    year_effect = rng.normal(0.0, 0.2, len(years))
    rows = []
    for t in range(n_transects):
        for j, y in enumerate(years):
            mu = 3.0 + slope * (y - years[0]) + transect_effect[t] + year_effect[j]
            rows.append(
                {
                    "transect": f"T{t + 1}",
                    "year": y,
                    "n_eggmass": float(np.exp(mu + rng.normal(0.0, 0.1))),
                }
            )
    return pd.DataFrame(rows)


def test_select_model_one_transect_is_glm():
    records = single_transect_records()
    assert select_model_kind(records) is ModelKind.SINGLE_TRANSECT_GLM
    assert isinstance(select_model(records, "n_eggmass"), SingleTransectModel)


def test_select_model_two_transects_is_mixed_even_if_one_is_all_zero():
    a = single_transect_records()
    b = a.assign(transect="T2", n_eggmass=0)
    records = pd.concat([a, b], ignore_index=True)
    assert select_model_kind(records) is ModelKind.MULTI_TRANSECT_MIXED
    model = select_model(records, "n_eggmass", log_offset=0.1)
    assert isinstance(model, MultiTransectModel)
    assert model.log_offset == pytest.approx(0.1)


def test_select_model_is_deterministic():
    records = multi_transect_records()
    kinds = {select_model_kind(records.sample(frac=1.0, random_state=i)) for i in range(5)}
    assert kinds == {ModelKind.MULTI_TRANSECT_MIXED}


def test_select_model_without_transects_raises():
    records = single_transect_records().assign(transect=None)
    with pytest.raises(ValueError):
        select_model_kind(records)


def test_glm_recovers_slope():
    fitted = fit_trend(single_transect_records(), "WOFR", "n_eggmass", log_offset=0.1)
    assert fitted.kind is ModelKind.SINGLE_TRANSECT_GLM
    assert fitted.slope == pytest.approx(-0.2, abs=0.02)
    assert fitted.slope_se > 0
    assert fitted.p_value < 0.05
    assert fitted.n_obs == 10


def test_glm_back_transform_matches_response_prediction():
    fitted = fit_trend(single_transect_records(), "WOFR", "n_eggmass", log_offset=0.1)
    years = np.array([2010.0, 2012.5, 2019.0])
    link = fitted.model.predict_link(fitted, years)
    mean = fitted.model.predict_mean(fitted, years)
    np.testing.assert_allclose(np.exp(link), mean, rtol=1e-10)


def test_glm_residuals_use_log_offset():
    records = single_transect_records()
    fitted = fit_trend(records, "WOFR", "n_eggmass", log_offset=0.1)
    link = fitted.model.predict_link(fitted, records["year"])
    expected = np.log(records["n_eggmass"] + 0.1) - link
    np.testing.assert_allclose(fitted.residuals.to_numpy(), expected.to_numpy())


def test_glm_all_zero_counts_raise():
    records = single_transect_records().assign(n_eggmass=0)
    with pytest.raises(ModelFitError, match="all counts are zero"):
        fit_trend(records, "WOFR", "n_eggmass", log_offset=0.1)


def test_glm_separated_counts_raise():
    # Seen once, in the last year: the fitted curve reproduces the data exactly
    records = pd.DataFrame(
        {"transect": "T1", "year": [2013, 2014, 2015], "n_eggmass": [0, 0, 1]}
    )
    with pytest.raises(ModelFitError, match="not identifiable"):
        fit_trend(records, "RARE", "n_eggmass", log_offset=0.1)


def test_repeated_warnings_are_reported_once():
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        for _ in range(5):
            warnings.warn("step size shrank", RuntimeWarning)
        warnings.warn("hessian is not positive definite", RuntimeWarning)
    assert len(caught) == 6
    assert _warning_messages(caught) == [
        "step size shrank",
        "hessian is not positive definite",
    ]


def test_mixed_model_messages_are_distinct():
    fitted = fit_trend(multi_transect_records(), "site", "n_eggmass", log_offset=0.1)
    assert len(fitted.messages) == len(set(fitted.messages))


def test_single_year_raises():
    records = single_transect_records().assign(year=2013)
    with pytest.raises(ModelFitError, match="2 distinct years"):
        fit_trend(records, "WOFR", "n_eggmass", log_offset=0.1)


def test_zero_counts_without_offset_raise_for_log_models():
    records = multi_transect_records()
    records.loc[0, "n_eggmass"] = 0.0
    with pytest.raises(ModelFitError, match="log offset"):
        fit_trend(records, "site", "n_eggmass", log_offset=0.0)


def test_mixed_model_fit_and_population_curve():
    records = multi_transect_records(slope=0.1)
    fitted = fit_trend(records, "Alice Lake", "n_eggmass", log_offset=0.0)
    assert fitted.kind is ModelKind.MULTI_TRANSECT_MIXED
    assert np.isfinite(fitted.slope) and np.isfinite(fitted.slope_se)
    assert fitted.slope == pytest.approx(0.1, abs=0.15)
    assert 0.0 <= fitted.p_value <= 1.0
    assert len(fitted.residuals) == len(records)

    curve = fitted_curve(fitted)
    assert list(curve.columns) == ["unit", "year", "pred_mean"]
    assert curve["year"].iloc[0] == pytest.approx(2010.0)
    assert curve["year"].iloc[-1] == pytest.approx(2017.0)
    assert len(curve) == 71
    expected = np.exp(fitted.model.predict_link(fitted, curve["year"].to_numpy()))
    np.testing.assert_allclose(curve["pred_mean"].to_numpy(), expected)


def test_transect_average_ols():
    records = pd.DataFrame(
        {"site": "Alice Lake", "year": [2013, 2014, 2015, 2016], "n_calls": [8.0, 4.2, 1.9, 1.0]}
    )
    fitted = TransectAverageModel("n_calls").fit(records, "Alice Lake")
    assert fitted.kind is ModelKind.TRANSECT_AVERAGE_OLS
    assert fitted.slope == pytest.approx(np.log(0.5), abs=0.05)
    assert fitted.r_squared > 0.99
    curve = fitted_curve(fitted, step=0.5)
    assert curve["year"].tolist() == [2013.0, 2013.5, 2014.0, 2014.5, 2015.0, 2015.5, 2016.0]
    assert curve["pred_mean"].iloc[0] == pytest.approx(8.0, rel=0.1)


def test_year_grid_steps():
    grid = year_grid(2013, 2014, 0.1)
    assert len(grid) == 11
    assert grid[0] == 2013.0 and grid[-1] == 2014.0


def test_durbin_watson_statistic_on_known_series():
    alternating = durbin_watson_tests(np.array([1.0, -1.0, 1.0, -1.0]), reps=200, seed=1)
    trending = durbin_watson_tests(np.array([-3.0, -1.0, 1.0, 3.0]), reps=200, seed=1)
    assert alternating["durbin_watson"] == pytest.approx(3.0)
    assert trending["durbin_watson"] == pytest.approx(0.6)
    assert alternating["autocorrelation"] == pytest.approx(-0.75)
    assert trending["p_value_positive"] < alternating["p_value_positive"]
    for res in (alternating, trending):
        assert 0.0 <= res["p_value_positive"] <= 1.0
        assert res["p_value_negative"] == pytest.approx(1.0 - res["p_value_positive"])
        assert 0.0 <= res["p_value_resampled"] <= 1.0
        assert res["note"] is None


def test_durbin_watson_short_or_constant_series():
    short = durbin_watson_tests(np.array([0.5, -0.5]))
    assert np.isnan(short["durbin_watson"])
    assert "at least 3" in short["note"]
    flat = durbin_watson_tests(np.array([0.2, 0.2, 0.2, 0.2]))
    assert np.isnan(flat["durbin_watson"])
    assert flat["note"] == "yearly residuals are constant"


def test_durbin_watson_resampling_is_seeded():
    series = np.array([0.3, -0.1, 0.4, -0.5, 0.2, 0.1])
    a = durbin_watson_tests(series, reps=300, seed=42)
    b = durbin_watson_tests(series, reps=300, seed=42)
    assert a["p_value_resampled"] == b["p_value_resampled"]


def test_imhof_symmetric_and_one_sided():
    assert _imhof_prob_below_zero(np.array([1.0, -1.0])) == pytest.approx(0.5, abs=1e-6)
    assert _imhof_prob_below_zero(np.array([1.0, 2.0])) == 0.0
    assert _imhof_prob_below_zero(np.array([-1.0, -2.0])) == 1.0
    # P(Z1^2 - 2 Z2^2 < 0) > 1/2
    assert _imhof_prob_below_zero(np.array([1.0, -2.0])) > 0.5


def test_diagnose_residuals_averages_per_year():
    records = multi_transect_records()
    fitted = fit_trend(records, "Alice Lake", "n_eggmass")
    diag = diagnose_residuals(fitted, reps=100, seed=3)
    assert diag.unit == "Alice Lake"
    assert diag.n_years == records["year"].nunique()
    assert list(diag.year_residuals.columns) == ["year", "mean_resid"]
    assert np.isfinite(diag.durbin_watson)
    assert 0.0 <= diag.durbin_watson <= 4.0
