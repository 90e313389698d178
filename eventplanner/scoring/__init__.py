from eventplanner.scoring.engine import CompositePreferenceScorer, ScoringEngine, ScoringWeights, is_urgent
from eventplanner.scoring.preference import PreferenceModel, PreferenceProfile

__all__ = ["CompositePreferenceScorer", "PreferenceModel", "PreferenceProfile", "ScoringEngine", "ScoringWeights", "is_urgent"]
