"""
Read-only diagnostics: run summaries, random draw self-check, plots.
"""

from .report import (
    OUTPUT_RANK,
    RunVisualizer,
    check_random,
    format_parameters,
    format_result,
    save_history_plot,
)

__all__ = [
    "OUTPUT_RANK",
    "RunVisualizer",
    "check_random",
    "format_parameters",
    "format_result",
    "save_history_plot",
]
