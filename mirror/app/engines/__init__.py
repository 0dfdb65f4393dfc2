"""
Deformation engines for the mirror.

The drape engine warps a flat garment grid over the tracked torso. Other
garment shapes (e.g. bottoms driven by hip/knee anchors) should live
alongside it in this package.
"""

from .drape import DrapeConfig, DrapeEngine, DrapeResult, geom_col

__all__ = ["DrapeConfig", "DrapeEngine", "DrapeResult", "geom_col"]
