"""
Analytics over the claim store.

Provides department, category, employee, budget, trend, approval and fraud
summaries computed from the current store snapshot.
"""

from .aggregator import (
    AnalyticsAggregator,
    ApprovalStatistics,
    BudgetUtilization,
    CategorySummary,
    CategoryTrend,
    DepartmentSummary,
    EmployeeSummary,
    FraudCase,
    Overview,
    TrendPoint,
)

__all__ = [
    "AnalyticsAggregator",
    # Value objects
    "ApprovalStatistics",
    "BudgetUtilization",
    "CategorySummary",
    "CategoryTrend",
    "DepartmentSummary",
    "EmployeeSummary",
    "FraudCase",
    "Overview",
    "TrendPoint",
]
