from __future__ import annotations

import dataclasses
from dataclasses import dataclass


@dataclass
class FindFociResult:
    """Measurements of one peak.

    Positions are voxel coordinates of the peak centre; the bounds are
    inclusive minima and exclusive maxima of the voxels assigned to the peak.
    """

    id: int = 0
    x: int = 0
    y: int = 0
    z: int = 0
    count: int = 0
    total_intensity: float = 0.0
    max_value: float = 0.0
    highest_saddle_value: float = 0.0
    saddle_neighbour_id: int = 0
    average_intensity: float = 0.0
    total_intensity_above_background: float = 0.0
    average_intensity_above_background: float = 0.0
    count_above_saddle: int = 0
    intensity_above_saddle: float = 0.0
    total_intensity_above_image_minimum: float = 0.0
    average_intensity_above_image_minimum: float = 0.0
    sort_value: float = 0.0
    object: int = 0
    state: int = 0
    minx: int = 0
    miny: int = 0
    minz: int = 0
    maxx: int = 0
    maxy: int = 0
    maxz: int = 0
    centre_x: float = 0.0
    centre_y: float = 0.0
    centre_z: float = 0.0
    # Padded buffer index of the peak maximum
    index: int = 0

    def copy(self) -> "FindFociResult":
        return dataclasses.replace(self)

    def to_dict(self) -> dict:
        d = dataclasses.asdict(self)
        d.pop("index")
        return d
