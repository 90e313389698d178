from eventplanner.filters.engine import FilterContext, FilterEngine

__all__ = ["FilterContext", "FilterEngine"]
