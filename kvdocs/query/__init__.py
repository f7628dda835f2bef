"""Query builders and result pages."""

from .criteria import ASC, DESC, Criteria
from .range_query import RangeQuery
from .result import ResultPage

__all__ = [
    "ASC",
    "DESC",
    "Criteria",
    "RangeQuery",
    "ResultPage",
]
