"""
财务计算服务
"""

from .settlement_calculator import SettlementCalculator
from .performance_scorer import PerformanceScorer

__all__ = ["SettlementCalculator", "PerformanceScorer"]
