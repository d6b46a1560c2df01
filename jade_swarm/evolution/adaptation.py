"""
jade_swarm/evolution/adaptation.py

Online adaptation of the mutation factor and crossover rate.

Every generation the (F, CR) pairs that produced an accepted trial are
collected. At the end of the generation their means pull the location
parameters muF and muCR toward recently successful values:

    muF  <- (1 - c) * muF  + c * lehmer_mean(SF)
    muCR <- (1 - c) * muCR + c * mean(SCR)        (JADE)
    muCR <- (1 - c) * muCR + c * power_mean(SCR)  (PMCRADE)

The Lehmer mean favours larger F, since a successful large step carries more
information about the landscape than a successful small one.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import logging
import numpy as np

logger = logging.getLogger(__name__)

# Lower clamp for muF / muCR so they stay strictly positive
MU_FLOOR = 1e-6


def arithmetic_mean(values: Sequence[float]) -> float:
    return float(np.mean(values))


def lehmer_mean(values: Sequence[float]) -> float:
    """sum(x^2) / sum(x); falls back to 0 for an all-zero set."""
    x = np.asarray(values, dtype=float)
    total = x.sum()
    if total <= 0.0:
        return 0.0
    return float(np.sum(x * x) / total)


def power_mean(values: Sequence[float], exponent: float) -> float:
    """(mean(x^n))^(1/n) for non-negative x."""
    x = np.clip(np.asarray(values, dtype=float), 0.0, None)
    return float(np.mean(x ** exponent) ** (1.0 / exponent))


def clamp_mu(value: float) -> float:
    return float(min(1.0, max(MU_FLOOR, value)))


@dataclass
class AdaptationState:
    """
    Location parameters and the success sets of the running generation.
    """

    adaptation_frequency_c: float = 0.1
    pmcrade: bool = True
    power_mean_exponent: float = 1.5
    mu_f: float = 0.5
    mu_cr: float = 0.5
    success_f: List[float] = field(default_factory=list)
    success_cr: List[float] = field(default_factory=list)

    def record_success(self, f: float, cr: float) -> None:
        self.success_f.append(f)
        self.success_cr.append(cr)

    @property
    def successes(self) -> int:
        return len(self.success_f)

    def crossover_mean(self, values: Sequence[float]) -> float:
        if self.pmcrade:
            return power_mean(values, self.power_mean_exponent)
        return arithmetic_mean(values)

    def update(
        self,
        success_f: Optional[Sequence[float]] = None,
        success_cr: Optional[Sequence[float]] = None,
    ) -> None:
        """
        Apply one adaptation step and clear the success sets.

        Pooled success sets (from every shard) may be passed in; otherwise
        the locally recorded sets are used. An empty set leaves its mu as is.
        """
        sf = self.success_f if success_f is None else list(success_f)
        scr = self.success_cr if success_cr is None else list(success_cr)
        c = self.adaptation_frequency_c

        if sf:
            self.mu_f = clamp_mu((1.0 - c) * self.mu_f + c * lehmer_mean(sf))
        if scr:
            self.mu_cr = clamp_mu((1.0 - c) * self.mu_cr + c * self.crossover_mean(scr))

        logger.debug(
            f"Adaptation from {len(sf)} successes: muF={self.mu_f:.4f}, muCR={self.mu_cr:.4f}"
        )
        self.success_f = []
        self.success_cr = []

    def to_dict(self) -> Dict[str, float]:
        return {
            "mu_f": self.mu_f,
            "mu_cr": self.mu_cr,
            "adaptation_frequency_c": self.adaptation_frequency_c,
            "pmcrade": self.pmcrade,
            "power_mean_exponent": self.power_mean_exponent,
        }
