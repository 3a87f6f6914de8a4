"""Odds slippage model.

Odds shown when a bet is decided are not the odds the bet settles at:
the pool keeps moving until the race goes off. The model draws a
percentage variance from a seeded ``numpy.random.Generator`` supplied
by the caller, scales it by the time left to post, and clamps the
result to an odds floor. Given the same seed the sequence of realized
odds is bit-identical across runs.
"""

import numpy as np

from race_backtest.backtest.config import BacktestConfig


def make_rng(seed: int | None) -> np.random.Generator:
    """Create the generator threaded through one backtest run."""
    return np.random.default_rng(seed)


def draw_seed() -> int:
    """Fresh seed for a run that did not ask for one (recorded on the job)."""
    return int(np.random.SeedSequence().entropy % (2**32))


class SlippageModel:
    """
    Convert decision-time odds into realized odds.

    Usage:
        model = SlippageModel(config)
        rng = make_rng(42)
        realized = model.apply_slippage(6.5, minutes_to_post=5, rng=rng)
    """

    def __init__(self, config: BacktestConfig | None = None):
        self._config = config or BacktestConfig()

    @property
    def enabled(self) -> bool:
        return self._config.slippage_enabled

    def draw_variance(self, rng: np.random.Generator) -> float:
        """Variance in percent, within [min_percent, max_percent]."""
        low = self._config.slippage_min_percent
        high = self._config.slippage_max_percent
        if low == high:
            return low

        if self._config.slippage_distribution == "uniform":
            return float(rng.uniform(low, high))

        mean = (low + high) / 2
        stddev = (high - low) / 4
        return float(np.clip(mean + stddev * rng.standard_normal(), low, high))

    def time_scale(self, minutes_to_post: float) -> float:
        """Fraction of the full drift range available with this much time left."""
        if minutes_to_post <= 0:
            return 0.0
        return min(1.0, minutes_to_post / self._config.slippage_horizon_minutes)

    def apply_slippage(
        self,
        decision_odds: float,
        minutes_to_post: float,
        rng: np.random.Generator,
    ) -> float:
        """Realized odds for a bet decided ``minutes_to_post`` before the off.

        Advances ``rng`` by exactly one draw when slippage is enabled and
        not at all otherwise.
        """
        if not self._config.slippage_enabled:
            return decision_odds

        variance = self.draw_variance(rng) * self.time_scale(minutes_to_post)
        realized = round(decision_odds * (1 + variance / 100), 2)
        return max(self._config.odds_floor, realized)
