"""Queries module."""
from liquidity.queries.forecast import ForecastQueries

__all__ = ["ForecastQueries"]
