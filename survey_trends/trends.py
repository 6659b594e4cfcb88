"""
Trend models for imputed count series.

One model is selected per unit of analysis (species, or study area for the
squirrel pipeline) from the number of distinct transects in that unit's slice:

- one transect:  SingleTransectModel, a log-link quasi-Poisson GLM of
                 count on year (Pearson chi2 dispersion, t-based p-values).
- several:       MultiTransectModel, a linear mixed model of
                 log(count + offset) on year with independent random
                 intercepts for transect and for year identity.

Both expose the same fit / predict_link / predict_mean interface, so slope
extraction, fitted curves and residual diagnostics do not branch on the model.
TransectAverageModel (OLS of log mean count on year) backs the squirrel
transect-average fallback and uses the same interface.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import integrate
from statsmodels.stats.stattools import durbin_watson
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning

logger = logging.getLogger(__name__)

DEFAULT_YEAR_STEP: float = 0.1


class ModelKind(Enum):
    SINGLE_TRANSECT_GLM = "single-transect-glm"
    MULTI_TRANSECT_MIXED = "multi-transect-mixed"
    TRANSECT_AVERAGE_OLS = "transect-average-ols"


class ModelFitError(Exception):
    """Raised when the trend model for one unit cannot be fitted."""

    pass


@dataclass
class FittedModel:
    unit: str
    kind: ModelKind
    params: pd.Series
    slope: float
    slope_se: float
    p_value: float
    # log(observed + offset) minus the population-level linear prediction
    residuals: pd.Series
    data: pd.DataFrame = field(repr=False)
    model: "TrendModel" = field(repr=False)
    result: Any = field(repr=False)
    n_obs: int = 0
    r_squared: Optional[float] = None
    messages: list[str] = field(default_factory=list)


@dataclass
class ResidualDiagnostics:
    """Durbin-Watson checks on year-averaged residuals."""

    unit: str
    n_years: int
    durbin_watson: float
    autocorrelation: float
    p_value_resampled: float
    p_value_positive: float
    p_value_negative: float
    year_residuals: pd.DataFrame = field(repr=False)
    note: Optional[str] = None


def _design(years) -> pd.DataFrame:
    X = pd.DataFrame({"year": np.asarray(years, dtype=float)})
    return sm.add_constant(X, has_constant="add")


def _warning_messages(caught) -> list[str]:
    """Distinct warning texts in the order first raised."""
    return list(dict.fromkeys(str(w.message) for w in caught))


class TrendModel:
    """Common interface of the trend models."""

    kind: ModelKind

    def __init__(
        self,
        count_column: str,
        log_offset: float = 0.0,
        year_column: str = "year",
        transect_column: str = "transect",
    ) -> None:
        self.count_column = count_column
        self.log_offset = float(log_offset)
        self.year_column = year_column
        self.transect_column = transect_column

    def fit(self, records: pd.DataFrame, unit: str) -> FittedModel:
        raise NotImplementedError

    def predict_link(self, fitted: FittedModel, years) -> np.ndarray:
        """Population-level prediction on the log scale."""
        raise NotImplementedError

    def predict_mean(self, fitted: FittedModel, years) -> np.ndarray:
        """Population-level prediction back-transformed to the count scale."""
        return np.exp(self.predict_link(fitted, years))

    def _check_records(self, records: pd.DataFrame, unit: str) -> np.ndarray:
        y = records[self.count_column].to_numpy(dtype=float)
        if len(records) < 3:
            raise ModelFitError(
                f"{unit}: need at least 3 records to fit {self.kind.value}, got {len(records)}"
            )
        if records[self.year_column].nunique() < 2:
            raise ModelFitError(f"{unit}: need at least 2 distinct years")
        if np.any(y < 0) or not np.all(np.isfinite(y)):
            raise ModelFitError(f"{unit}: counts must be finite and non-negative")
        if self.log_offset <= 0 and np.any(y <= 0):
            raise ModelFitError(
                f"{unit}: zero counts cannot be log-transformed without a log offset"
            )
        return y

    def _residuals(self, fitted: FittedModel) -> pd.Series:
        y = fitted.data[self.count_column].to_numpy(dtype=float)
        link = self.predict_link(fitted, fitted.data[self.year_column])
        return pd.Series(
            np.log(y + self.log_offset) - link, index=fitted.data.index, name="resid"
        )

    def _finish(self, fitted: FittedModel) -> FittedModel:
        for name in ("slope", "slope_se", "p_value"):
            if not np.isfinite(getattr(fitted, name)):
                raise ModelFitError(
                    f"{fitted.unit}: {self.kind.value} produced a non-finite {name}"
                )
        fitted.residuals = self._residuals(fitted)
        for msg in fitted.messages:
            logger.warning(f"{fitted.unit} ({self.kind.value}): {msg}")
        return fitted


class SingleTransectModel(TrendModel):
    """Quasi-Poisson GLM, log link, count ~ year."""

    kind = ModelKind.SINGLE_TRANSECT_GLM

    def fit(self, records: pd.DataFrame, unit: str) -> FittedModel:
        y = self._check_records(records, unit)
        if not np.any(y > 0):
            raise ModelFitError(f"{unit}: all counts are zero")
        X = _design(records[self.year_column])
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                res = sm.GLM(y, X, family=sm.families.Poisson()).fit(
                    scale="X2", use_t=True
                )
            except (ValueError, np.linalg.LinAlgError) as e:
                raise ModelFitError(f"{unit}: {self.kind.value} fit failed: {e}") from e
        separated = any(issubclass(w.category, PerfectSeparationWarning) for w in caught)
        if separated or not getattr(res, "converged", True):
            raise ModelFitError(
                f"{unit}: {self.kind.value} fit is not identifiable "
                "(perfect separation or IRLS did not converge)"
            )
        fitted = FittedModel(
            unit=unit,
            kind=self.kind,
            params=res.params,
            slope=float(res.params["year"]),
            slope_se=float(res.bse["year"]),
            p_value=float(res.pvalues["year"]),
            residuals=pd.Series(dtype=float),
            data=records.copy(),
            model=self,
            result=res,
            n_obs=int(res.nobs),
            messages=_warning_messages(caught),
        )
        return self._finish(fitted)

    def predict_link(self, fitted: FittedModel, years) -> np.ndarray:
        return np.asarray(fitted.result.predict(_design(years), which="linear"))

    def predict_mean(self, fitted: FittedModel, years) -> np.ndarray:
        return np.asarray(fitted.result.predict(_design(years), which="mean"))


class MultiTransectModel(TrendModel):
    """
    Linear mixed model log(count + offset) ~ year with crossed random
    intercepts for transect and year identity. statsmodels expresses crossed
    effects as variance components inside a single all-records group.
    """

    kind = ModelKind.MULTI_TRANSECT_MIXED

    def fit(self, records: pd.DataFrame, unit: str) -> FittedModel:
        y = self._check_records(records, unit)
        frame = pd.DataFrame(
            {
                "log_count": np.log(y + self.log_offset),
                "year": records[self.year_column].to_numpy(dtype=float),
                "transect": records[self.transect_column].astype(str).to_numpy(),
                "year_f": records[self.year_column].astype(str).to_numpy(),
                "group": 1,
            }
        )
        if np.ptp(frame["log_count"].to_numpy()) == 0:
            raise ModelFitError(f"{unit}: log counts have no variation")
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                res = smf.mixedlm(
                    "log_count ~ year",
                    frame,
                    groups="group",
                    re_formula="0",
                    vc_formula={
                        "transect": "0 + C(transect)",
                        "year_f": "0 + C(year_f)",
                    },
                ).fit(reml=True)
            except (ValueError, np.linalg.LinAlgError) as e:
                raise ModelFitError(f"{unit}: {self.kind.value} fit failed: {e}") from e
        messages = _warning_messages(caught)
        if not res.converged:
            messages.append("mixed model optimizer did not converge")
        fitted = FittedModel(
            unit=unit,
            kind=self.kind,
            params=res.fe_params,
            slope=float(res.fe_params["year"]),
            slope_se=float(res.bse_fe["year"]),
            p_value=float(res.pvalues["year"]),
            residuals=pd.Series(dtype=float),
            data=records.copy(),
            model=self,
            result=res,
            n_obs=int(res.nobs),
            messages=messages,
        )
        return self._finish(fitted)

    def predict_link(self, fitted: FittedModel, years) -> np.ndarray:
        # Fixed effects only: transect and year offsets are excluded
        newdata = pd.DataFrame({"year": np.asarray(years, dtype=float)})
        return np.asarray(fitted.result.predict(newdata))


class TransectAverageModel(TrendModel):
    """OLS of log(mean count + offset) on year, one record per year."""

    kind = ModelKind.TRANSECT_AVERAGE_OLS

    def fit(self, records: pd.DataFrame, unit: str) -> FittedModel:
        y = self._check_records(records, unit)
        X = _design(records[self.year_column])
        try:
            res = sm.OLS(np.log(y + self.log_offset), X).fit()
        except (ValueError, np.linalg.LinAlgError) as e:
            raise ModelFitError(f"{unit}: {self.kind.value} fit failed: {e}") from e
        fitted = FittedModel(
            unit=unit,
            kind=self.kind,
            params=res.params,
            slope=float(res.params["year"]),
            slope_se=float(res.bse["year"]),
            p_value=float(res.pvalues["year"]),
            residuals=pd.Series(dtype=float),
            data=records.copy(),
            model=self,
            result=res,
            n_obs=int(res.nobs),
            r_squared=float(res.rsquared),
        )
        return self._finish(fitted)

    def predict_link(self, fitted: FittedModel, years) -> np.ndarray:
        return np.asarray(fitted.result.predict(_design(years)))


# -------------------------
# Model selection and fitting
# -------------------------
def select_model_kind(records: pd.DataFrame, transect_column: str = "transect") -> ModelKind:
    """
    SINGLE_TRANSECT_GLM for exactly one distinct transect label, otherwise
    MULTI_TRANSECT_MIXED. A transect with zero counts in every year still counts.
    """
    n_transects = records[transect_column].nunique(dropna=True)
    if n_transects == 0:
        raise ValueError("No transect labels in records; cannot select a trend model")
    if n_transects == 1:
        return ModelKind.SINGLE_TRANSECT_GLM
    return ModelKind.MULTI_TRANSECT_MIXED


def select_model(
    records: pd.DataFrame,
    count_column: str,
    log_offset: float = 0.0,
    year_column: str = "year",
    transect_column: str = "transect",
) -> TrendModel:
    kind = select_model_kind(records, transect_column)
    cls = SingleTransectModel if kind is ModelKind.SINGLE_TRANSECT_GLM else MultiTransectModel
    return cls(
        count_column,
        log_offset=log_offset,
        year_column=year_column,
        transect_column=transect_column,
    )


def fit_trend(
    records: pd.DataFrame,
    unit: str,
    count_column: str,
    log_offset: float = 0.0,
    year_column: str = "year",
    transect_column: str = "transect",
) -> FittedModel:
    """Select the model for this unit's slice and fit it."""
    model = select_model(
        records,
        count_column,
        log_offset=log_offset,
        year_column=year_column,
        transect_column=transect_column,
    )
    logger.info(
        f"Fitting {model.kind.value} for {unit} "
        f"({records[transect_column].nunique()} transects, {len(records)} records)"
    )
    return model.fit(records, unit)


def year_grid(first: float, last: float, step: float = DEFAULT_YEAR_STEP) -> np.ndarray:
    """Evenly spaced years from first to last inclusive."""
    n_steps = int(round((float(last) - float(first)) / step))
    return np.round(float(first) + step * np.arange(n_steps + 1), 10)


def fitted_curve(fitted: FittedModel, step: float = DEFAULT_YEAR_STEP) -> pd.DataFrame:
    """
    Back-transformed population-level predictions on a dense year grid,
    averaged over the unit's transect levels.

    Returns columns [unit, year, pred_mean].
    """
    model = fitted.model
    years = fitted.data[model.year_column].astype(float)
    grid = year_grid(years.min(), years.max(), step)
    if model.transect_column in fitted.data.columns:
        transects = sorted(fitted.data[model.transect_column].astype(str).unique())
    else:
        transects = ["all"]
    newdata = pd.DataFrame(
        [(y, t) for t in transects for y in grid], columns=["year", "transect"]
    )
    newdata["pred_mean"] = model.predict_mean(fitted, newdata["year"].to_numpy())
    curve = newdata.groupby("year", sort=True)["pred_mean"].mean().reset_index()
    curve.insert(0, "unit", fitted.unit)
    return curve


# -------------------------
# Residual diagnostics
# -------------------------
def _lag1_autocorrelation(e: np.ndarray) -> float:
    denom = float(np.sum(e**2))
    if denom == 0:
        return float("nan")
    return float(np.sum(e[1:] * e[:-1]) / denom)


def _imhof_prob_below_zero(weights: np.ndarray) -> float:
    """
    P(sum_j w_j * Z_j^2 < 0) for independent standard normals Z_j (Imhof 1961).
    """
    weights = np.asarray(weights, dtype=float)
    if np.all(weights >= 0):
        return 0.0
    if np.all(weights <= 0):
        return 1.0

    def _integrand(u: float) -> float:
        if u == 0:
            return 0.5 * float(np.sum(weights))
        theta = 0.5 * np.sum(np.arctan(weights * u))
        rho = np.prod((1.0 + (weights * u) ** 2) ** 0.25)
        return float(np.sin(theta) / (u * rho))

    value, _ = integrate.quad(_integrand, 0.0, np.inf, limit=200)
    return float(np.clip(0.5 - value / np.pi, 0.0, 1.0))


def durbin_watson_exact_pvalue(dw: float, exog: np.ndarray) -> float:
    """
    P(DW <= dw) under independent normal errors for a regression on `exog`:
    small values indicate positive autocorrelation.
    """
    X = np.asarray(exog, dtype=float)
    n, k = X.shape
    A = 2.0 * np.eye(n) - np.eye(n, k=1) - np.eye(n, k=-1)
    A[0, 0] = A[-1, -1] = 1.0
    M = np.eye(n) - X @ np.linalg.pinv(X.T @ X) @ X.T
    ev = np.sort(np.linalg.eigvals(M @ A).real)[::-1][: n - k]
    return _imhof_prob_below_zero(ev - dw)


def durbin_watson_tests(
    series: np.ndarray, reps: int = 1000, seed: Optional[int] = None
) -> dict[str, Any]:
    """
    Fit an intercept-only OLS to `series` and test its residuals for serial
    correlation.

    Returns durbin_watson, autocorrelation (lag 1), p_value_resampled
    (two-sided, residual resampling), p_value_positive (exact, alternative of
    positive autocorrelation), p_value_negative, and a note when the series is
    too short or constant for the statistics to exist.
    """
    y = np.asarray(series, dtype=float)
    n = len(y)
    out: dict[str, Any] = {
        "durbin_watson": float("nan"),
        "autocorrelation": float("nan"),
        "p_value_resampled": float("nan"),
        "p_value_positive": float("nan"),
        "p_value_negative": float("nan"),
        "note": None,
    }
    if n < 3:
        out["note"] = f"need at least 3 yearly residuals, got {n}"
        return out

    X = np.ones((n, 1))
    null_fit = sm.OLS(y, X).fit()
    e = np.asarray(null_fit.resid)
    if np.allclose(e, 0.0):
        out["note"] = "yearly residuals are constant"
        return out

    dw = float(durbin_watson(e))
    out["durbin_watson"] = dw
    out["autocorrelation"] = _lag1_autocorrelation(e)

    rng = np.random.default_rng(seed)
    mu = np.asarray(null_fit.fittedvalues)
    sims = np.empty(reps)
    for i in range(reps):
        y_star = mu + rng.choice(e, size=n, replace=True)
        e_star = y_star - y_star.mean()
        ss = float(np.sum(e_star**2))
        sims[i] = np.sum(np.diff(e_star) ** 2) / ss if ss > 0 else np.nan
    sims = sims[np.isfinite(sims)]
    if len(sims):
        out["p_value_resampled"] = float(
            min(1.0, 2.0 * min(np.mean(sims < dw), np.mean(sims > dw)))
        )

    p_pos = durbin_watson_exact_pvalue(dw, X)
    out["p_value_positive"] = p_pos
    out["p_value_negative"] = 1.0 - p_pos
    return out


def diagnose_residuals(
    fitted: FittedModel, reps: int = 1000, seed: Optional[int] = None
) -> ResidualDiagnostics:
    """
    Average the unit's residuals within each year and run the Durbin-Watson
    checks on that yearly series. Reported for review only.
    """
    year_col = fitted.model.year_column
    frame = pd.DataFrame(
        {
            "year": fitted.data[year_col].to_numpy(),
            "resid": fitted.residuals.to_numpy(),
        }
    )
    yearly = (
        frame.groupby("year", sort=True)["resid"]
        .mean()
        .reset_index()
        .rename(columns={"resid": "mean_resid"})
    )
    stats = durbin_watson_tests(yearly["mean_resid"].to_numpy(), reps=reps, seed=seed)
    diag = ResidualDiagnostics(
        unit=fitted.unit,
        n_years=len(yearly),
        year_residuals=yearly,
        **stats,
    )
    if diag.note:
        logger.info(f"{fitted.unit}: residual autocorrelation not assessed ({diag.note})")
    return diag
