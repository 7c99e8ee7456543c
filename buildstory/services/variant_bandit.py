"""
VariantBandit - Beta-Bernoulli Thompson Sampling core.

Pure statistics, no storage:
- Beta(alpha, beta) sampling via the Gamma ratio X / (X + Y), with each
  integer-shape Gamma drawn as a sum of unit exponentials (-ln U)
- Thompson arm selection with first-occurrence tie-breaking
- Posterior updates from binary rewards
- Conversion-rate estimates, normal-approximation intervals and regret

Alpha and beta are always positive integers here; they come straight from
the bandit_state table.
"""

import math
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from ..core.errors import EmptyCandidateListError, InvalidBanditParameterError
from .models import Arm, ArmState


# =============================================================================
# Constants
# =============================================================================

PRIOR_ALPHA = 1
PRIOR_BETA = 1

# Two-sided z-scores for the supported confidence levels
Z_SCORES = {
    0.95: 1.96,
    0.99: 2.58,
}

UniformSource = Callable[[], float]


def initial_arm_state(scope: str, slot: str, variant_id: str) -> ArmState:
    """Uniform Beta(1, 1) prior for a newly referenced arm."""
    return ArmState(
        scope=scope, slot=slot, variant_id=variant_id,
        alpha=PRIOR_ALPHA, beta=PRIOR_BETA,
    )


class VariantBandit:
    """Thompson Sampling over Beta posteriors."""

    def __init__(self, uniform: Optional[UniformSource] = None, seed: Optional[int] = None):
        """
        Args:
            uniform: Zero-argument callable returning draws on [0, 1). Defaults
                to a numpy Generator. Exact zeros are redrawn.
            seed: Seed for the default generator (ignored when uniform is given).
        """
        if uniform is None:
            uniform = np.random.default_rng(seed).random
        self._uniform = uniform

    # =========================================================================
    # Sampling
    # =========================================================================

    def _open_uniform(self) -> float:
        """Uniform on the open interval (0, 1)."""
        u = float(self._uniform())
        while u <= 0.0:
            u = float(self._uniform())
        return u

    def _sample_gamma(self, shape: int) -> float:
        """Gamma(shape, 1) for integer shape >= 1: sum of shape Exp(1) draws."""
        total = 0.0
        for _ in range(shape):
            total -= math.log(self._open_uniform())
        return total

    def sample_beta(self, alpha: int, beta: int) -> float:
        """Draw from Beta(alpha, beta).

        Raises:
            InvalidBanditParameterError: alpha or beta is not a positive integer.
        """
        _require_positive_int("alpha", alpha)
        _require_positive_int("beta", beta)

        x = self._sample_gamma(alpha)
        y = self._sample_gamma(beta)
        total = x + y
        if total == 0.0:
            # Both draws underflowed
            return 0.5
        return x / total

    def choose_arm(self, arms: Sequence[Arm]) -> str:
        """Thompson Sampling: one posterior draw per arm, highest draw wins.

        A single arm is returned without drawing. Ties keep the arm that
        appears first.

        Returns:
            The winning arm's id.

        Raises:
            EmptyCandidateListError: no arms given.
        """
        if not arms:
            raise EmptyCandidateListError("No arms available")

        if len(arms) == 1:
            return arms[0].id

        best_id = None
        best_sample = -1.0
        for arm in arms:
            sample = self.sample_beta(arm.alpha, arm.beta)
            if sample > best_sample:
                best_id, best_sample = arm.id, sample
        return best_id

    # =========================================================================
    # Posterior updates and estimates
    # =========================================================================

    @staticmethod
    def update_state(state: ArmState, reward: int) -> ArmState:
        """Apply one binary reward; returns a new state.

        Raises:
            InvalidBanditParameterError: reward is not 0 or 1.
        """
        if isinstance(reward, bool) or reward not in (0, 1):
            raise InvalidBanditParameterError(f"Reward must be 0 or 1, got {reward!r}")
        reward = int(reward)
        return state.model_copy(update={
            "alpha": state.alpha + reward,
            "beta": state.beta + (1 - reward),
        })

    @staticmethod
    def conversion_rate(alpha: int, beta: int) -> float:
        """Posterior mean alpha / (alpha + beta)."""
        return alpha / (alpha + beta)

    @staticmethod
    def confidence_interval(
        alpha: int,
        beta: int,
        confidence_level: float = 0.95,
    ) -> Tuple[float, float]:
        """Normal approximation to the Beta posterior, clipped to [0, 1].

        Uses z=1.96 for 95% and z=2.58 for 99%.
        """
        if confidence_level not in Z_SCORES:
            raise InvalidBanditParameterError(
                f"Unsupported confidence level {confidence_level}; use one of {sorted(Z_SCORES)}"
            )
        rate = VariantBandit.conversion_rate(alpha, beta)
        n = alpha + beta
        variance = (alpha * beta) / (n ** 2 * (n + 1))
        margin = Z_SCORES[confidence_level] * math.sqrt(variance)
        return max(0.0, rate - margin), min(1.0, rate + margin)

    @staticmethod
    def calculate_regret(arms: Sequence[Arm], optimal_id: str) -> float:
        """Expected regret of past pulls against the optimal arm.

        (optimal rate - pull-weighted average rate) * suboptimal pulls.
        Returns 0.0 when the optimal arm is unknown or nothing was pulled.
        """
        optimal = next((a for a in arms if a.id == optimal_id), None)
        if optimal is None:
            return 0.0

        total_pulls = sum(a.alpha + a.beta - 2 for a in arms)
        if total_pulls <= 0:
            return 0.0

        optimal_pulls = optimal.alpha + optimal.beta - 2
        optimal_rate = VariantBandit.conversion_rate(optimal.alpha, optimal.beta)
        realised_rate = sum(
            VariantBandit.conversion_rate(a.alpha, a.beta) * (a.alpha + a.beta - 2)
            for a in arms
        ) / total_pulls
        return (optimal_rate - realised_rate) * (total_pulls - optimal_pulls)


def _require_positive_int(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
        raise InvalidBanditParameterError(
            f"{name} must be a positive integer, got {value!r}"
        )


def arms_from_states(states: Sequence[ArmState]) -> List[Arm]:
    """Sampler view of persisted arm states (order preserved)."""
    return [Arm(id=s.variant_id, alpha=s.alpha, beta=s.beta) for s in states]
