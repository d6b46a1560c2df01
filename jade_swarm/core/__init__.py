"""
Core components shared by the engine and its collaborators.

- rng: Random draw service (uniform, normal, Cauchy, integer)
"""

from .rng import RandomDraws, NumpyDraws, draw_excluding

__all__ = ["RandomDraws", "NumpyDraws", "draw_excluding"]
