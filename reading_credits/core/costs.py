"""
Feature cost lookup.

Maps a priced action (a reading mode) to its credit cost.
"""

from dataclasses import dataclass
from typing import Dict, Mapping

from .errors import InvalidFeature


@dataclass(frozen=True)
class FeatureCostTable:
    """Fixed cost table for priced features."""
    costs: Mapping[str, int]
    
    def __post_init__(self):
        """Validate every cost is a non-negative integer."""
        for key, cost in self.costs.items():
            if not isinstance(cost, int) or isinstance(cost, bool) or cost < 0:
                raise ValueError(f"cost for {key!r} must be a non-negative integer")
    
    def cost_of(self, feature_key: str) -> int:
        """Get the cost of a feature.
        
        Args:
            feature_key: Feature identifier
            
        Returns:
            Integer cost of one use of the feature
            
        Raises:
            InvalidFeature: If the feature is not priced. There is no
                zero-cost default.
        """
        if feature_key not in self.costs:
            raise InvalidFeature(feature_key)
        return self.costs[feature_key]
    
    def as_dict(self) -> Dict[str, int]:
        return dict(self.costs)


# Reading modes and their costs; overridable through configuration
DEFAULT_FEATURE_COSTS: Dict[str, int] = {
    "threeCards": 1,
    "weighOptions": 1,
    "classic10": 5,
}

DEFAULT_COST_TABLE = FeatureCostTable(dict(DEFAULT_FEATURE_COSTS))
