from typing import Dict, Optional

from shared.errors import ValidationError
from .config import DEFAULT_POINTS_TABLE


class PointsCalculator:
    """
    Placement-based scoring for a single game.
    Places missing from the table (11th and beyond by default) earn the flat
    default value.
    """

    def __init__(self, points_table: Optional[Dict[int, int]] = None, default_points: int = 30):
        table = DEFAULT_POINTS_TABLE if points_table is None else points_table
        # Config loaded from JSON/env may carry string keys
        self.points_table = {int(place): int(points) for place, points in table.items()}
        self.default_points = default_points

    @classmethod
    def from_config(cls, config: dict) -> "PointsCalculator":
        return cls(
            points_table=config.get('POINTS_TABLE'),
            default_points=config.get('DEFAULT_PLACEMENT_POINTS', 30)
        )

    def points_for_place(self, place: int) -> int:
        """
        Get the points earned for finishing in `place`.

        Raises:
            ValidationError: if place is not a positive integer
        """
        if isinstance(place, bool) or not isinstance(place, int) or place < 1:
            raise ValidationError(f"Place must be a positive integer, got {place!r}")
        return self.points_table.get(place, self.default_points)
