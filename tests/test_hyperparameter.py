from __future__ import annotations

import pytest

from crowd_forecast.domain.constraints import SmoothingConfig
from crowd_forecast.services.hyperparameter_service import (
    ALPHA_CANDIDATES,
    BETA_CANDIDATES,
    PHI_CANDIDATES,
    HyperparameterSelector,
)
from crowd_forecast.services.smoothing import fit_series


BASE = SmoothingConfig(alpha=0.2, beta=0.1)
SERIES = [20.0, 24.0, 27.0, 33.0, 35.0, 41.0, 44.0, 49.0, 52.0, 58.0]


def test_grid_dedupes_base_coefficients_already_in_candidates() -> None:
    grid = HyperparameterSelector().candidate_grid(BASE)
    assert len(grid) == len(ALPHA_CANDIDATES) * len(BETA_CANDIDATES) * len(PHI_CANDIDATES)


def test_grid_includes_base_coefficients_outside_candidates() -> None:
    grid = HyperparameterSelector().candidate_grid(SmoothingConfig(alpha=0.15, beta=0.08))
    alphas = {params["alpha"] for params in grid}
    betas = {params["beta"] for params in grid}
    assert 0.15 in alphas
    assert 0.08 in betas
    assert len(grid) == 5 * 5 * len(PHI_CANDIDATES)


def test_short_series_skips_search_and_disables_damping() -> None:
    result = HyperparameterSelector(min_points=6).select(
        SERIES[:5], SmoothingConfig(alpha=0.3, beta=0.2, phi=0.9)
    )
    assert result.searched is False
    assert result.candidates_evaluated == 0
    assert result.config.phi == 1.0
    assert (result.config.alpha, result.config.beta) == (0.3, 0.2)


def test_selected_config_has_minimum_sse() -> None:
    selector = HyperparameterSelector()
    result = selector.select(SERIES, BASE)

    assert result.searched is True
    assert result.candidates_evaluated == len(selector.candidate_grid(BASE))
    for params in selector.candidate_grid(BASE):
        candidate = SmoothingConfig(**params)
        assert result.sse <= fit_series(SERIES, candidate).sse + 1e-12


def test_selection_keeps_trend_clamp_from_base() -> None:
    base = SmoothingConfig(alpha=0.2, beta=0.1, trend_clamp=3.0)
    result = HyperparameterSelector().select(SERIES, base)
    assert result.config.trend_clamp == 3.0


def test_invalid_min_points_raises() -> None:
    with pytest.raises(ValueError):
        HyperparameterSelector(min_points=0)
