"""Initial marketplace schema: orders, settlements, commission, returns, seller performance

Revision ID: 0001_initial_marketplace
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial_marketplace'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(**kwargs):
    return sa.Numeric(precision=18, scale=2, **kwargs)


def upgrade() -> None:
    """Create marketplace tables"""

    # 订单
    op.create_table('orders',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('buyer_id', sa.BigInteger(), nullable=False, comment='买家ID'),
        sa.Column('buyer_name', sa.Text(), nullable=True, comment='买家姓名'),
        sa.Column('recipient_name', sa.Text(), nullable=False, comment='收货人'),
        sa.Column('phone_number', sa.Text(), nullable=False, comment='收货电话'),
        sa.Column('full_address', sa.Text(), nullable=False, comment='完整收货地址'),
        sa.Column('payment_method', sa.String(length=20), nullable=False, comment='支付方式'),
        sa.Column('payment_status', sa.String(length=20), nullable=False, comment='买家支付状态'),
        sa.Column('payment_transaction_id', sa.String(length=100), nullable=True, comment='支付网关交易号'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='买家付款时间'),
        sa.Column('subtotal', _money(), nullable=False, comment='商品小计'),
        sa.Column('shipping_fee', _money(), nullable=False, comment='运费'),
        sa.Column('discount_amount', _money(), nullable=False, comment='优惠金额'),
        sa.Column('final_amount', _money(), nullable=False, comment='应付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='币种'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='订单状态'),
        sa.Column('cancellation_reason', sa.Text(), nullable=True, comment='取消原因'),
        sa.Column('cancelled_by', sa.String(length=20), nullable=True, comment='取消方角色'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True, comment='妥投时间'),
        sa.Column('version', sa.Integer(), nullable=False, comment='状态变更乐观锁版本号'),
        sa.Column('rma_version', sa.Integer(), nullable=False, comment='退货数量占用乐观锁版本号'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
        sa.CheckConstraint("payment_method IN ('COD', 'VNPAY', 'MOMO', 'BANK_TRANSFER')", name='ck_orders_payment_method'),
        sa.CheckConstraint("payment_status IN ('PENDING', 'PAID', 'REFUNDED', 'CANCELLED')", name='ck_orders_payment_status'),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'CONFIRMED', 'SHIPPED', 'DELIVERED', 'PAID', 'CANCELLED', 'REFUNDED')",
            name='ck_orders_status'
        ),
        sa.CheckConstraint('subtotal >= 0', name='ck_orders_subtotal'),
        sa.CheckConstraint('shipping_fee >= 0', name='ck_orders_shipping_fee'),
        sa.CheckConstraint('discount_amount >= 0', name='ck_orders_discount'),
        sa.CheckConstraint('final_amount >= 0', name='ck_orders_final_amount'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_orders_buyer', 'orders', ['buyer_id', 'created_at'])
    op.create_index('idx_orders_status_delivered', 'orders', ['status', 'delivered_at'])

    op.create_table('order_items',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('product_id', sa.BigInteger(), nullable=False, comment='商品ID'),
        sa.Column('shop_id', sa.BigInteger(), nullable=False, comment='所属店铺ID'),
        sa.Column('product_name', sa.Text(), nullable=True, comment='商品名称快照'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='购买数量'),
        sa.Column('price_at_purchase', _money(), nullable=False, comment='成交单价'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity'),
        sa.CheckConstraint('price_at_purchase >= 0', name='ck_order_items_price'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'product_id', name='uq_order_items_product')
    )
    op.create_index('idx_order_items_shop', 'order_items', ['shop_id'])

    op.create_table('order_status_events',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=True, comment='变更前状态，下单时为空'),
        sa.Column('to_status', sa.String(length=20), nullable=False, comment='变更后状态'),
        sa.Column('actor_role', sa.String(length=20), nullable=False),
        sa.Column('actor_id', sa.BigInteger(), nullable=True, comment='操作者ID'),
        sa.Column('reason', sa.Text(), nullable=True, comment='变更原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint("actor_role IN ('BUYER', 'SELLER', 'ADMIN', 'SYSTEM')", name='ck_order_status_events_actor'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_order_status_events_order', 'order_status_events', ['order_id', 'id'])

    # 分店结算
    op.create_table('shop_settlements',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('shop_id', sa.BigInteger(), nullable=False, comment='店铺ID'),
        sa.Column('shop_subtotal', _money(), nullable=False, comment='店铺商品小计'),
        sa.Column('shop_shipping_fee', _money(), nullable=False, comment='分摊运费'),
        sa.Column('commission_config_id', sa.BigInteger(), nullable=True, comment='生效佣金配置ID，兜底默认值时为空'),
        sa.Column('commission_fee_type', sa.String(length=20), nullable=False),
        sa.Column('commission_rate_applied', sa.Numeric(precision=18, scale=4), nullable=False, comment='适用费率（百分比）或固定费用'),
        sa.Column('commission_minimum_fee', _money(), nullable=True, comment='最低平台费'),
        sa.Column('commission_maximum_fee', _money(), nullable=True, comment='最高平台费'),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=False, comment='佣金解析时间'),
        sa.Column('platform_fee', _money(), nullable=False, comment='平台费'),
        sa.Column('refunded_amount', _money(), nullable=False, comment='打款前已退款金额'),
        sa.Column('net_amount', _money(), nullable=False, comment='卖家应收净额'),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('is_paid', sa.Boolean(), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='打款时间'),
        sa.Column('transaction_id', sa.String(length=100), nullable=True, comment='打款交易号'),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True, comment='转为可打款时间'),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True, comment='作废时间'),
        sa.Column('void_reason', sa.Text(), nullable=True, comment='作废原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("commission_fee_type IN ('PERCENTAGE', 'FIXED')", name='ck_shop_settlements_fee_type'),
        sa.CheckConstraint("status IN ('PENDING', 'PAYABLE', 'PAID', 'VOID')", name='ck_shop_settlements_status'),
        sa.CheckConstraint('net_amount >= 0', name='ck_shop_settlements_net'),
        sa.CheckConstraint('platform_fee >= 0', name='ck_shop_settlements_fee'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'shop_id', name='uq_shop_settlements_order_shop')
    )
    op.create_index('idx_shop_settlements_shop', 'shop_settlements', ['shop_id', 'status'])

    op.create_table('settlement_adjustments',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('settlement_id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('shop_id', sa.BigInteger(), nullable=False),
        sa.Column('return_request_id', sa.BigInteger(), nullable=False),
        sa.Column('rma_code', sa.String(length=32), nullable=False),
        sa.Column('adjustment_type', sa.String(length=30), nullable=False),
        sa.Column('refund_amount', _money(), nullable=False, comment='退款金额'),
        sa.Column('platform_fee_delta', _money(), nullable=False, comment='平台费变化（退还为负）'),
        sa.Column('amount', _money(), nullable=False, comment='卖家净额变化（扣回为负）'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("adjustment_type IN ('REFUND_DEDUCTION')", name='ck_settlement_adjustments_type'),
        sa.ForeignKeyConstraint(['settlement_id'], ['shop_settlements.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('settlement_id', 'return_request_id', name='uq_settlement_adjustments_rma')
    )
    op.create_index('idx_settlement_adjustments_shop', 'settlement_adjustments', ['shop_id', 'created_at'])

    # 佣金
    op.create_table('commission_configs',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('scope', sa.String(length=10), nullable=False),
        sa.Column('shop_id', sa.BigInteger(), nullable=True, comment='店铺ID，全局配置为空'),
        sa.Column('fee_type', sa.String(length=20), nullable=False),
        sa.Column('percentage_rate', sa.Numeric(precision=7, scale=4), nullable=True, comment='百分比费率 0-100'),
        sa.Column('fixed_amount', _money(), nullable=True, comment='固定费用'),
        sa.Column('minimum_fee', _money(), nullable=True, comment='最低平台费'),
        sa.Column('maximum_fee', _money(), nullable=True, comment='最高平台费'),
        sa.Column('effective_from', sa.DateTime(timezone=True), nullable=False, comment='生效开始'),
        sa.Column('effective_to', sa.DateTime(timezone=True), nullable=True, comment='生效结束（不含）'),
        sa.Column('is_custom', sa.Boolean(), nullable=False, comment='是否店铺自定义'),
        sa.Column('created_by', sa.BigInteger(), nullable=True, comment='操作管理员ID'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("scope IN ('GLOBAL', 'SHOP')", name='ck_commission_configs_scope'),
        sa.CheckConstraint("fee_type IN ('PERCENTAGE', 'FIXED')", name='ck_commission_configs_fee_type'),
        sa.CheckConstraint(
            "(scope = 'GLOBAL' AND shop_id IS NULL) OR (scope = 'SHOP' AND shop_id IS NOT NULL)",
            name='ck_commission_configs_scope_shop'
        ),
        sa.CheckConstraint(
            'percentage_rate IS NULL OR (percentage_rate >= 0 AND percentage_rate <= 100)',
            name='ck_commission_configs_rate_range'
        ),
        sa.CheckConstraint('fixed_amount IS NULL OR fixed_amount >= 0', name='ck_commission_configs_fixed'),
        sa.PrimaryKeyConstraint('id')
    )
    # 每个作用域至多一条生效配置
    op.create_index(
        'uq_commission_configs_active_shop', 'commission_configs', ['shop_id'],
        unique=True, postgresql_where=sa.text("scope = 'SHOP' AND effective_to IS NULL")
    )
    op.create_index(
        'uq_commission_configs_active_global', 'commission_configs', ['scope'],
        unique=True, postgresql_where=sa.text("scope = 'GLOBAL' AND effective_to IS NULL")
    )
    op.create_index('idx_commission_configs_window', 'commission_configs', ['scope', 'shop_id', 'effective_from'])

    op.create_table('commission_history',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.BigInteger(), nullable=True, comment='店铺ID，全局变更为空'),
        sa.Column('config_id', sa.BigInteger(), nullable=True, comment='新生效配置ID'),
        sa.Column('fee_type', sa.String(length=20), nullable=False),
        sa.Column('previous_rate', sa.Numeric(precision=18, scale=4), nullable=True, comment='变更前费率'),
        sa.Column('new_rate', sa.Numeric(precision=18, scale=4), nullable=False, comment='变更后费率'),
        sa.Column('reason', sa.String(length=300), nullable=False, comment='变更原因'),
        sa.Column('note', sa.String(length=500), nullable=True, comment='备注'),
        sa.Column('changed_by', sa.BigInteger(), nullable=True, comment='操作管理员ID'),
        sa.Column('superseded_count', sa.Integer(), nullable=True, comment='全局覆盖时关闭的店铺配置数'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_commission_history_shop', 'commission_history', ['shop_id', 'created_at'])

    # 退货退款
    op.create_table('return_requests',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('rma_code', sa.String(length=32), nullable=False, comment='退货单号'),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('buyer_id', sa.BigInteger(), nullable=False),
        sa.Column('shop_id', sa.BigInteger(), nullable=False, comment='退货商品所属店铺'),
        sa.Column('reason_code', sa.String(length=30), nullable=False),
        sa.Column('reason_detail', sa.String(length=1000), nullable=True, comment='原因说明'),
        sa.Column('requested_resolution', sa.String(length=20), nullable=False),
        sa.Column('return_method', sa.String(length=20), nullable=False),
        sa.Column('evidences', postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment='凭证 [{url, type}]'),
        sa.Column('subtotal', _money(), nullable=False, comment='退货商品金额'),
        sa.Column('shipping_fee', _money(), nullable=False, comment='退货运费'),
        sa.Column('restocking_fee', _money(), nullable=False, comment='重新入库费'),
        sa.Column('refund_total', _money(), nullable=False, comment='应退金额'),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('settlement_applied_at', sa.DateTime(timezone=True), nullable=True, comment='退款已计入结算的时间'),
        sa.Column('version', sa.Integer(), nullable=False, comment='乐观锁版本号'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "reason_code IN ('DAMAGED_ITEM', 'NOT_AS_DESCRIBED', 'WRONG_ITEM', 'OTHER')",
            name='ck_return_requests_reason'
        ),
        sa.CheckConstraint("requested_resolution IN ('REFUND', 'REPLACE', 'REPAIR')", name='ck_return_requests_resolution'),
        sa.CheckConstraint("return_method IN ('PICKUP', 'DROP_OFF')", name='ck_return_requests_method'),
        sa.CheckConstraint(
            "status IN ('REQUESTED', 'APPROVED', 'REJECTED', 'SHIPPED', 'RETURNED', 'REFUNDED', 'COMPLETED', 'CANCELLED')",
            name='ck_return_requests_status'
        ),
        sa.CheckConstraint('restocking_fee >= 0', name='ck_return_requests_restocking'),
        sa.CheckConstraint('refund_total >= 0', name='ck_return_requests_refund_total'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rma_code')
    )
    op.create_index('idx_return_requests_order', 'return_requests', ['order_id', 'status'])
    op.create_index('idx_return_requests_shop', 'return_requests', ['shop_id', 'created_at'])

    op.create_table('return_items',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('return_request_id', sa.BigInteger(), nullable=False),
        sa.Column('product_id', sa.BigInteger(), nullable=False),
        sa.Column('product_name', sa.Text(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', _money(), nullable=False, comment='成交单价快照'),
        sa.CheckConstraint('quantity > 0', name='ck_return_items_quantity'),
        sa.ForeignKeyConstraint(['return_request_id'], ['return_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('return_request_id', 'product_id', name='uq_return_items_product')
    )

    op.create_table('return_status_events',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('return_request_id', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('actor_role', sa.String(length=20), nullable=False),
        sa.Column('actor_id', sa.BigInteger(), nullable=True),
        sa.Column('note', sa.String(length=1000), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("actor_role IN ('BUYER', 'SELLER', 'ADMIN', 'SYSTEM')", name='ck_return_status_events_actor'),
        sa.ForeignKeyConstraint(['return_request_id'], ['return_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    # 卖家绩效快照
    op.create_table('seller_performance_snapshots',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.BigInteger(), nullable=False),
        sa.Column('period_label', sa.String(length=32), nullable=False, comment='统计周期标签，如 2026-09'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False, comment='不含'),
        sa.Column('total_revenue', _money(), nullable=False),
        sa.Column('total_orders', sa.Integer(), nullable=False),
        sa.Column('rating', sa.Numeric(precision=4, scale=2), nullable=False),
        sa.Column('rating_count', sa.Integer(), nullable=False),
        sa.Column('gmv', _money(), nullable=False),
        sa.Column('revenue_score', sa.Numeric(precision=7, scale=2), nullable=False),
        sa.Column('orders_score', sa.Numeric(precision=7, scale=2), nullable=False),
        sa.Column('rating_score', sa.Numeric(precision=7, scale=2), nullable=False),
        sa.Column('gmv_score', sa.Numeric(precision=7, scale=2), nullable=False),
        sa.Column('performance_score', sa.Numeric(precision=7, scale=2), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_seller_performance_period', 'seller_performance_snapshots', ['period_label', 'rank'])
    op.create_index('idx_seller_performance_shop', 'seller_performance_snapshots', ['shop_id', 'computed_at'])


def downgrade() -> None:
    """Drop marketplace tables"""
    op.drop_table('seller_performance_snapshots')
    op.drop_table('return_status_events')
    op.drop_table('return_items')
    op.drop_table('return_requests')
    op.drop_table('commission_history')
    op.drop_table('commission_configs')
    op.drop_table('settlement_adjustments')
    op.drop_table('shop_settlements')
    op.drop_table('order_status_events')
    op.drop_table('order_items')
    op.drop_table('orders')
