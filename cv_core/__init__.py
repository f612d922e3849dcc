"""
CraftVillages 核心模块
订单履约、分店结算、佣金台账、退货退款与卖家绩效
"""

__version__ = "1.0.0"
