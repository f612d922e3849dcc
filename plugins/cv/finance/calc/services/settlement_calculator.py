"""
分店结算计算器 - 按店铺拆分订单金额、分摊运费、计算平台费与卖家净额

纯计算，无数据库依赖：相同输入得到相同结果。
"""

from collections import defaultdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Mapping

from cv_core.utils.logger import get_logger

from ..models.settlement import (
    OrderSnapshot, CommissionTerms, ShopSettlementDraft, RefundRecalculation
)

logger = get_logger(__name__)


class SettlementCalculator:
    """分店结算计算器"""

    def __init__(self, quantum: Decimal = Decimal("1")):
        """
        Args:
            quantum: 金额最小单位（VND 为 1）
        """
        self.quantum = quantum

    def group_by_shop(self, snapshot: OrderSnapshot) -> Dict[int, Decimal]:
        """按店铺汇总商品小计，按 shop_id 升序"""
        subtotals: Dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
        for line in snapshot.lines:
            subtotals[line.shop_id] += line.line_total

        total = sum(subtotals.values(), Decimal("0"))
        if total != snapshot.subtotal:
            raise ValueError(
                f"Order subtotal {snapshot.subtotal} does not match sum of lines {total}"
            )
        return {shop_id: subtotals[shop_id] for shop_id in sorted(subtotals)}

    def allocate_shipping(
        self,
        shop_subtotals: Mapping[int, Decimal],
        order_subtotal: Decimal,
        shipping_fee: Decimal,
    ) -> Dict[int, Decimal]:
        """
        按商品金额比例分摊运费

        除 shop_id 最大的店铺外，每家店按 小计 / 订单小计 × 运费 单独取整；
        最后一家取 运费 - 其余店铺之和，合计恒等于订单运费。
        订单小计为 0 时按店铺数均摊。

        取整进位可能让最后一家为负，此时从前面的店铺（shop_id 由大到小）
        逐个扣回，保证分摊额非负。
        """
        shop_ids = sorted(shop_subtotals)
        allocated: Dict[int, Decimal] = {}
        if not shop_ids:
            return allocated

        *leading, last = shop_ids
        for shop_id in leading:
            if order_subtotal > 0:
                share = shop_subtotals[shop_id] * shipping_fee / order_subtotal
            else:
                share = shipping_fee / len(shop_ids)
            allocated[shop_id] = share.quantize(self.quantum, ROUND_HALF_UP)

        residual = shipping_fee - sum(allocated.values(), Decimal("0"))
        for shop_id in reversed(leading):
            if residual >= 0:
                break
            taken = min(allocated[shop_id], -residual)
            allocated[shop_id] -= taken
            residual += taken
        allocated[last] = residual

        return allocated

    def calculate_shop(
        self,
        shop_id: int,
        shop_subtotal: Decimal,
        shop_shipping_fee: Decimal,
        terms: CommissionTerms,
        refunded_amount: Decimal = Decimal("0"),
    ) -> ShopSettlementDraft:
        """计算单店平台费与净额"""
        platform_fee, net_amount = self._fee_and_net(
            shop_subtotal - refunded_amount, shop_shipping_fee, terms
        )
        return ShopSettlementDraft(
            shop_id=shop_id,
            shop_subtotal=shop_subtotal,
            shop_shipping_fee=shop_shipping_fee,
            terms=terms,
            platform_fee=platform_fee,
            refunded_amount=refunded_amount,
            net_amount=net_amount,
        )

    def calculate(
        self,
        snapshot: OrderSnapshot,
        terms_by_shop: Mapping[int, CommissionTerms],
    ) -> List[ShopSettlementDraft]:
        """
        计算订单内每个店铺的结算

        Args:
            snapshot: 订单快照
            terms_by_shop: 每个店铺已解析的佣金条款

        Returns:
            按 shop_id 升序的结算草稿
        """
        shop_subtotals = self.group_by_shop(snapshot)
        shipping = self.allocate_shipping(shop_subtotals, snapshot.subtotal, snapshot.shipping_fee)

        missing = [shop_id for shop_id in shop_subtotals if shop_id not in terms_by_shop]
        if missing:
            raise ValueError(f"Missing commission terms for shops: {missing}")

        drafts = [
            self.calculate_shop(shop_id, subtotal, shipping[shop_id], terms_by_shop[shop_id])
            for shop_id, subtotal in shop_subtotals.items()
        ]

        logger.debug(
            "Settlement calculated",
            order_id=snapshot.order_id,
            shops=len(drafts),
            platform_fee=str(sum((d.platform_fee for d in drafts), Decimal("0"))),
        )
        return drafts

    def recalculate_after_refund(
        self,
        shop_subtotal: Decimal,
        shop_shipping_fee: Decimal,
        terms: CommissionTerms,
        refunded_before: Decimal,
        refund_amount: Decimal,
    ) -> RefundRecalculation:
        """
        退款后重新计算平台费与净额

        平台费按扣除累计退款后的商品金额重新计算，运费分摊不变。
        """
        if refund_amount < 0:
            raise ValueError("Refund amount must be non-negative")

        refunded_after = refunded_before + refund_amount
        if refunded_after > shop_subtotal:
            raise ValueError(
                f"Cumulative refund {refunded_after} exceeds shop subtotal {shop_subtotal}"
            )

        fee_before, net_before = self._fee_and_net(shop_subtotal - refunded_before, shop_shipping_fee, terms)
        fee_after, net_after = self._fee_and_net(shop_subtotal - refunded_after, shop_shipping_fee, terms)

        return RefundRecalculation(
            refunded_amount=refunded_after,
            platform_fee=fee_after,
            net_amount=net_after,
            platform_fee_delta=fee_after - fee_before,
            net_delta=net_after - net_before,
        )

    def _fee_and_net(self, base_amount: Decimal, shipping_fee: Decimal, terms: CommissionTerms):
        # 平台费不超过店铺应收总额，净额不为负
        fee = terms.calculate_fee(base_amount, self.quantum)
        fee = min(fee, base_amount + shipping_fee)
        return fee, base_amount + shipping_fee - fee
