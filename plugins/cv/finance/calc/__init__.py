"""
CraftVillages 财务计算插件
提供分店结算计算和卖家绩效评分，均为纯计算
"""

__version__ = "1.0.0"
