"""
Microscope state models.

Classes:
    Position: Stage position (x, y, z in micrometers, r in degrees)
    FieldOfView: Camera field of view in micrometers
"""

from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class Position:
    """
    Represents a position in the stage coordinate system.

    Attributes:
        x: X-axis position in micrometers
        y: Y-axis position in micrometers
        z: Z-axis (focus) position in micrometers
        r: Rotation angle in degrees
    """
    x: float
    y: float
    z: float
    r: float

    def to_list(self) -> List[float]:
        """
        Convert position to list format.

        Returns:
            List[float]: [x, y, z, r] coordinates
        """
        return [self.x, self.y, self.z, self.r]

    def to_dict(self) -> Dict[str, float]:
        return {
            'x': self.x,
            'y': self.y,
            'z': self.z,
            'r': self.r
        }

    @classmethod
    def from_list(cls, coords: List[float]) -> 'Position':
        """
        Create Position from list of coordinates.

        Args:
            coords: List of [x, y, z, r] coordinates

        Returns:
            Position: New Position instance
        """
        if len(coords) != 4:
            raise ValueError(f"Expected 4 coordinates, got {len(coords)}")
        return cls(x=float(coords[0]), y=float(coords[1]),
                   z=float(coords[2]), r=float(coords[3]))

    def __str__(self) -> str:
        return f"Position(x={self.x:.3f}, y={self.y:.3f}, z={self.z:.3f}, r={self.r:.1f}°)"


@dataclass(frozen=True)
class FieldOfView:
    """Camera field of view in micrometers."""
    width: float
    height: float

    def __str__(self) -> str:
        return f"{self.width:.2f} x {self.height:.2f} um"
