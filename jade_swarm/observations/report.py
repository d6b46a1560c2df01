"""
observations/report.py

Watch the optimizer, never steer it.

Read-only diagnostics built on the engine's public accessors:
- Parameter and result summaries (text)
- A self-check of the random draw service (histograms of each draw kind)
- Convergence and histogram plots (matplotlib, imported lazily)
"""

from __future__ import annotations
from typing import Any, Dict, List, TYPE_CHECKING
import numpy as np

from jade_swarm.core.rng import RandomDraws

if TYPE_CHECKING:
    from jade_swarm.evolution.optimizer import SubPopulation

# Only this rank writes reports in multi-shard runs
OUTPUT_RANK = 0


def format_parameters(engine: SubPopulation, comment: str = "") -> str:
    """Human-readable summary of the run configuration."""
    stats = engine.get_statistics()
    lines = []
    if comment:
        lines.append(comment)
    lines.append(
        f"JADE{'+PMCRADE' if stats['pmcrade'] else ''} | "
        f"{'minimize' if stats['minimize'] else 'maximize'} | "
        f"shards: {stats['shards']} | distribution level: {stats['distribution_level']}"
    )
    if 'total_population' in stats:
        lines.append(
            f"population: {stats['total_population']} "
            f"(rank {stats['rank']} owns {stats['subpopulation']}) | "
            f"dimension: {stats['dimension']}"
        )
    lines.append(
        f"generations: {stats['total_generations_max']} | "
        f"p: {stats['best_share_p']} | c: {stats['adaptation_frequency_c']} | "
        f"archive trim: {stats['archive_trim']}"
    )
    return "\n".join(lines)


def format_result(engine: SubPopulation, comment: str = "") -> str:
    """Summary of the finished run: best, worst, adaptation state."""
    lines = []
    if comment:
        lines.append(comment)
    if engine.error_status != 0:
        lines.append(f"run failed (status {int(engine.error_status)}): {engine.last_error}")
        return "\n".join(lines)

    best_x, best_f = engine.get_best()
    worst_x, worst_f = engine.get_worst()
    lines.append(f"best fitness:  {best_f:.10g}")
    lines.append(f"best vector:   {np.array2string(best_x, precision=6)}")
    lines.append(f"worst fitness: {worst_f:.10g}")
    lines.append(
        f"generations: {engine.generation} | evaluations: {engine.evaluations} | "
        f"muF: {engine.adaptation.mu_f:.4f} | muCR: {engine.adaptation.mu_cr:.4f}"
    )
    return "\n".join(lines)


def check_random(
    draws: RandomDraws,
    samples: int = 100_000,
    bins: int = 20,
    location: float = 0.5,
    scale: float = 0.1,
) -> Dict[str, Dict[str, Any]]:
    """
    Sample each draw kind and histogram the results.

    Used to eyeball that the generator produces the distributions the
    operators assume. Cauchy samples are histogrammed on
    [location - 10 scale, location + 10 scale]; the tails fall outside.
    """
    uniform = np.asarray(draws.uniform(0.0, 1.0, size=samples))
    normal = np.array([draws.normal(location, scale) for _ in range(samples)])
    cauchy = np.array([draws.cauchy(location, scale) for _ in range(samples)])
    integer = np.array([draws.integer(0, bins) for _ in range(samples)])

    def summarize(values: np.ndarray, value_range: tuple) -> Dict[str, Any]:
        counts, edges = np.histogram(values, bins=bins, range=value_range)
        return {
            "counts": counts,
            "edges": edges,
            "mean": float(np.mean(values)),
            "median": float(np.median(values)),
            "std": float(np.std(values)),
        }

    window = (location - 10 * scale, location + 10 * scale)
    return {
        "uniform": summarize(uniform, (0.0, 1.0)),
        "normal": summarize(normal, window),
        "cauchy": summarize(cauchy, window),
        "integer": summarize(integer, (0, bins)),
    }


class RunVisualizer:
    """
    Plots for finished runs.
    """

    def __init__(self, figsize: tuple = (10, 6)):
        self.figsize = figsize

        # Lazy import matplotlib
        self._plt = None
        self._fig = None

    def _setup_plot(self, rows: int = 1, cols: int = 1):
        """Initialize matplotlib figure."""
        import matplotlib.pyplot as plt
        self._plt = plt

        if self._fig is not None:
            plt.close(self._fig)
        self._fig, axes = plt.subplots(rows, cols, figsize=self.figsize)
        return axes

    def plot_history(self, history: List[Dict[str, Any]], log_scale: bool = True) -> None:
        """Best fitness per generation plus the muF/muCR trajectory."""
        ax_fit, ax_mu = self._setup_plot(1, 2)
        generations = [h['generation'] for h in history]

        best = np.array([h['best_fitness'] for h in history])
        if log_scale and len(best) and np.all(best > 0):
            ax_fit.semilogy(generations, best, color='#4361ee')
        else:
            ax_fit.plot(generations, best, color='#4361ee')
        ax_fit.set_xlabel("generation")
        ax_fit.set_ylabel("best fitness")

        ax_mu.plot(generations, [h['mu_f'] for h in history], label="muF", color='#f72585')
        ax_mu.plot(generations, [h['mu_cr'] for h in history], label="muCR", color='#4cc9f0')
        ax_mu.set_ylim(0.0, 1.05)
        ax_mu.set_xlabel("generation")
        ax_mu.legend()

    def plot_random_check(self, summary: Dict[str, Dict[str, Any]]) -> None:
        """Histograms produced by check_random()."""
        axes = self._setup_plot(2, 2)
        for ax, (name, data) in zip(np.ravel(axes), summary.items()):
            edges = data["edges"]
            ax.bar(edges[:-1], data["counts"], width=np.diff(edges), align='edge', alpha=0.8)
            ax.set_title(f"{name} (mean {data['mean']:.3f})")

    def save(self, path: str) -> None:
        """Save current figure to file."""
        if self._fig is not None:
            self._fig.savefig(path, dpi=150)

    def close(self) -> None:
        """Close the figure."""
        if self._plt is not None and self._fig is not None:
            self._plt.close(self._fig)
            self._fig = None


def save_history_plot(history: List[Dict[str, Any]], path: str) -> None:
    """Render and save a convergence plot in one call."""
    viz = RunVisualizer()
    try:
        viz.plot_history(history)
        viz.save(path)
    finally:
        viz.close()
