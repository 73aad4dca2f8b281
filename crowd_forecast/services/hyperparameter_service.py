"""Grid search over smoothing coefficients by one-step-ahead squared error."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Sequence

from sklearn.model_selection import ParameterGrid

from crowd_forecast.domain.constraints import SmoothingConfig, validate_smoothing_config
from crowd_forecast.services.smoothing import fit_series
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)


ALPHA_CANDIDATES = (0.2, 0.4, 0.6, 0.8)
BETA_CANDIDATES = (0.1, 0.2, 0.3, 0.4)
PHI_CANDIDATES = (0.9, 0.95, 0.98, 1.0)
MIN_SEARCH_POINTS = 6


@dataclass(frozen=True)
class SelectionResult:
    config: SmoothingConfig
    sse: Optional[float]
    candidates_evaluated: int
    searched: bool


def _dedupe(provided: float, candidates: Sequence[float]) -> list[float]:
    return sorted({round(float(provided), 10), *candidates})


class HyperparameterSelector:
    """Picks (alpha, beta, phi) minimising cumulative one-step SSE.

    The grid is bounded at |alpha| x |beta| x |phi| (at most 100 fits) because
    a refit runs once per zone on every cycle tick.
    """

    def __init__(
        self,
        min_points: int = MIN_SEARCH_POINTS,
        phi_candidates: Sequence[float] = PHI_CANDIDATES,
    ) -> None:
        if min_points < 1:
            raise ValueError("min_points must be >= 1")
        self._min_points = min_points
        self._phi_candidates = tuple(phi_candidates)

    def candidate_grid(self, base: SmoothingConfig) -> ParameterGrid:
        return ParameterGrid(
            {
                "alpha": _dedupe(base.alpha, ALPHA_CANDIDATES),
                "beta": _dedupe(base.beta, BETA_CANDIDATES),
                "phi": sorted(set(self._phi_candidates)),
            }
        )

    def select(self, values: Sequence[float], base: SmoothingConfig) -> SelectionResult:
        validate_smoothing_config(base)
        if len(values) < self._min_points:
            return SelectionResult(
                config=replace(base, phi=1.0),
                sse=None,
                candidates_evaluated=0,
                searched=False,
            )

        grid = self.candidate_grid(base)
        best_config: Optional[SmoothingConfig] = None
        best_sse = float("inf")
        for params in grid:
            candidate = replace(base, **params)
            sse = fit_series(values, candidate).sse
            if sse < best_sse:
                best_sse = sse
                best_config = candidate

        if best_config is None:
            # Every candidate scored NaN; keep the caller's coefficients.
            best_config = replace(base, phi=1.0)
        logger.debug(
            "Hyperparameter search completed | points=%s | candidates=%s | "
            "alpha=%.2f | beta=%.2f | phi=%.2f | sse=%.4f",
            len(values),
            len(grid),
            best_config.alpha,
            best_config.beta,
            best_config.phi,
            best_sse,
        )
        return SelectionResult(
            config=best_config,
            sse=best_sse,
            candidates_evaluated=len(grid),
            searched=True,
        )
