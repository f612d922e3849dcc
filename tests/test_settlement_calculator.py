"""
分店结算计算器测试
"""
from decimal import Decimal

import pytest

from cv_core.models.enums import FeeType
from plugins.cv.finance.calc.models import CommissionTerms, OrderSnapshot, SettlementLine
from plugins.cv.finance.calc.services import SettlementCalculator


def _snapshot(lines, shipping_fee="0"):
    settlement_lines = [
        SettlementLine(product_id=i, shop_id=shop_id, quantity=qty, price_at_purchase=Decimal(price))
        for i, (shop_id, qty, price) in enumerate(lines, start=1)
    ]
    subtotal = sum((line.line_total for line in settlement_lines), Decimal("0"))
    return OrderSnapshot(order_id=1, lines=settlement_lines, subtotal=subtotal, shipping_fee=Decimal(shipping_fee))


def _pct(rate, **kwargs):
    return CommissionTerms(fee_type=FeeType.PERCENTAGE, rate=Decimal(rate), **kwargs)


class TestSettlementCalculator:

    def setup_method(self):
        self.calculator = SettlementCalculator(quantum=Decimal("1"))

    def test_two_shop_order(self):
        snapshot = _snapshot(
            [(101, 2, "250000"), (101, 1, "200000"), (202, 1, "300000")],
            shipping_fee="30000",
        )
        drafts = self.calculator.calculate(snapshot, {101: _pct("4"), 202: _pct("5")})

        a, b = drafts
        assert (a.shop_id, b.shop_id) == (101, 202)
        assert a.shop_subtotal == Decimal("700000")
        assert a.shop_shipping_fee == Decimal("21000")
        assert a.platform_fee == Decimal("28000")
        assert a.net_amount == Decimal("693000")
        assert b.shop_subtotal == Decimal("300000")
        assert b.shop_shipping_fee == Decimal("9000")
        assert b.platform_fee == Decimal("15000")
        assert b.net_amount == Decimal("294000")

    def test_shipping_shares_sum_exactly(self):
        snapshot = _snapshot([(1, 1, "100"), (2, 1, "100"), (3, 1, "100")], shipping_fee="100")
        shares = self.calculator.allocate_shipping(
            self.calculator.group_by_shop(snapshot), snapshot.subtotal, snapshot.shipping_fee
        )

        assert sum(shares.values()) == Decimal("100")
        assert all(share >= 0 for share in shares.values())
        # 尾差落在 shop_id 最大的店铺
        assert shares == {1: Decimal("33"), 2: Decimal("33"), 3: Decimal("34")}

    def test_equal_shops_get_equal_shipping_shares(self):
        shares = self.calculator.allocate_shipping(
            {1: Decimal("1"), 2: Decimal("1"), 3: Decimal("1"), 4: Decimal("7")},
            Decimal("10"),
            Decimal("5"),
        )

        # 0.5 各自进位为 1，最后一家取余数
        assert shares == {1: Decimal("1"), 2: Decimal("1"), 3: Decimal("1"), 4: Decimal("2")}

    def test_rounding_overshoot_never_goes_negative(self):
        shares = self.calculator.allocate_shipping(
            {1: Decimal("1"), 2: Decimal("1"), 3: Decimal("0")}, Decimal("2"), Decimal("1")
        )

        assert shares == {1: Decimal("1"), 2: Decimal("0"), 3: Decimal("0")}

    def test_zero_subtotal_splits_shipping_evenly(self):
        shares = self.calculator.allocate_shipping(
            {1: Decimal("0"), 2: Decimal("0")}, Decimal("0"), Decimal("15001")
        )

        assert sum(shares.values()) == Decimal("15001")
        assert shares[1] >= 0 and shares[2] >= 0

    def test_subtotal_mismatch_rejected(self):
        snapshot = OrderSnapshot(
            lines=[SettlementLine(product_id=1, shop_id=1, quantity=1, price_at_purchase=Decimal("100"))],
            subtotal=Decimal("90"),
        )
        with pytest.raises(ValueError):
            self.calculator.group_by_shop(snapshot)

    def test_missing_terms_rejected(self):
        snapshot = _snapshot([(1, 1, "100"), (2, 1, "100")])
        with pytest.raises(ValueError):
            self.calculator.calculate(snapshot, {1: _pct("5")})

    def test_minimum_and_maximum_fee(self):
        low = self.calculator.calculate_shop(1, Decimal("10000"), Decimal("0"), _pct("5", minimum_fee=Decimal("2000")))
        high = self.calculator.calculate_shop(1, Decimal("10000000"), Decimal("0"), _pct("5", maximum_fee=Decimal("100000")))

        assert low.platform_fee == Decimal("2000")
        assert low.net_amount == Decimal("8000")
        assert high.platform_fee == Decimal("100000")

    def test_fixed_fee_is_capped_by_shop_total(self):
        terms = CommissionTerms(fee_type=FeeType.FIXED, rate=Decimal("50000"))
        draft = self.calculator.calculate_shop(1, Decimal("20000"), Decimal("5000"), terms)

        assert draft.platform_fee == Decimal("25000")
        assert draft.net_amount == Decimal("0")

    def test_zero_base_has_no_fee(self):
        draft = self.calculator.calculate_shop(1, Decimal("0"), Decimal("3000"), _pct("5", minimum_fee=Decimal("1000")))

        assert draft.platform_fee == Decimal("0")
        assert draft.net_amount == Decimal("3000")

    def test_fee_rounds_half_up(self):
        draft = self.calculator.calculate_shop(1, Decimal("10"), Decimal("0"), _pct("5"))

        assert draft.platform_fee == Decimal("1")  # 0.5 -> 1

    def test_refund_recalculation(self):
        result = self.calculator.recalculate_after_refund(
            Decimal("700000"), Decimal("21000"), _pct("4"), Decimal("0"), Decimal("250000")
        )

        assert result.refunded_amount == Decimal("250000")
        assert result.platform_fee == Decimal("18000")
        assert result.net_amount == Decimal("453000")
        assert result.platform_fee_delta == Decimal("-10000")
        assert result.net_delta == Decimal("-240000")

    def test_refund_cannot_exceed_subtotal(self):
        with pytest.raises(ValueError):
            self.calculator.recalculate_after_refund(
                Decimal("100"), Decimal("0"), _pct("5"), Decimal("60"), Decimal("50")
            )
