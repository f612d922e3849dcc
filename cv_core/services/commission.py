"""
佣金服务
解析店铺在某时刻适用的佣金，维护佣金配置与变更历史
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cv_core.models import CommissionConfig, CommissionHistoryEntry
from cv_core.models.enums import CommissionScope, FeeType
from cv_core.utils.errors import (
    ConcurrentModificationError, OutOfRangeError, ValidationError
)
from plugins.cv.finance.calc.models import CommissionTerms
from .base import BaseService

REASON_MAX_LENGTH = 300
NOTE_MAX_LENGTH = 500


class ResolvedCommission(CommissionTerms):
    """佣金解析结果"""

    shop_id: Optional[int] = None
    source: str  # SHOP / GLOBAL / DEFAULT
    is_custom: bool = False
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    resolved_at: datetime

    def to_terms(self) -> CommissionTerms:
        return CommissionTerms(
            config_id=self.config_id,
            fee_type=self.fee_type,
            rate=self.rate,
            minimum_fee=self.minimum_fee,
            maximum_fee=self.maximum_fee,
        )


class CommissionService(BaseService):
    """佣金服务"""

    async def resolve(self, shop_id: int, at: Optional[datetime] = None) -> ResolvedCommission:
        """解析店铺在指定时刻适用的佣金（默认当前时刻）"""
        at = at or self.now()
        return await self.execute_with_session(self.resolve_in_session, shop_id, at)

    async def resolve_in_session(self, session: AsyncSession, shop_id: int, at: datetime) -> ResolvedCommission:
        """店铺配置优先，其次全局配置，最后兜底默认费率"""
        config = await self._find_effective(session, CommissionScope.SHOP, at, shop_id)
        if config is None:
            config = await self._find_effective(session, CommissionScope.GLOBAL, at)

        if config is None:
            return ResolvedCommission(
                shop_id=shop_id,
                source="DEFAULT",
                fee_type=FeeType.PERCENTAGE,
                rate=self.settings.commission_default_rate,
                resolved_at=at,
            )

        return ResolvedCommission(
            config_id=config.id,
            shop_id=shop_id,
            source=config.scope,
            fee_type=FeeType(config.fee_type),
            rate=config.rate_value,
            minimum_fee=config.minimum_fee,
            maximum_fee=config.maximum_fee,
            is_custom=config.is_custom,
            effective_from=config.effective_from,
            effective_to=config.effective_to,
            resolved_at=at,
        )

    async def update_shop_rate(
        self,
        shop_id: int,
        new_rate: Decimal,
        reason: str,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
        fee_type: FeeType = FeeType.PERCENTAGE,
        minimum_fee: Optional[Decimal] = None,
        maximum_fee: Optional[Decimal] = None,
    ) -> CommissionHistoryEntry:
        """设置店铺自定义佣金：关闭旧配置、生效新配置并记录历史"""
        fee_type = FeeType(fee_type)
        new_rate = self._validate_rate(fee_type, new_rate, minimum_fee, maximum_fee)
        reason = self.require_text(reason, "COMMISSION_REASON_REQUIRED", "reason", REASON_MAX_LENGTH)
        note = self._validate_note(note)

        return await self.execute_with_transaction(
            self._update_shop_rate_tx,
            shop_id, fee_type, new_rate, reason, note, actor_id, minimum_fee, maximum_fee
        )

    async def _update_shop_rate_tx(
        self,
        session: AsyncSession,
        shop_id: int,
        fee_type: FeeType,
        new_rate: Decimal,
        reason: str,
        note: Optional[str],
        actor_id: Optional[int],
        minimum_fee: Optional[Decimal],
        maximum_fee: Optional[Decimal],
    ) -> CommissionHistoryEntry:
        now = self.now()
        previous = await self.resolve_in_session(session, shop_id, now)

        current = await self._find_open(session, CommissionScope.SHOP, shop_id)
        if current is not None:
            await self._close_configs(session, [current.id], now)

        config = await self._insert_config(
            session,
            scope=CommissionScope.SHOP,
            shop_id=shop_id,
            fee_type=fee_type,
            rate=new_rate,
            minimum_fee=minimum_fee,
            maximum_fee=maximum_fee,
            now=now,
            actor_id=actor_id,
        )

        entry = CommissionHistoryEntry(
            shop_id=shop_id,
            config_id=config.id,
            fee_type=fee_type.value,
            previous_rate=previous.rate,
            new_rate=new_rate,
            reason=reason,
            note=note,
            changed_by=actor_id,
            created_at=now,
        )
        session.add(entry)
        await session.flush()

        self.logger.info(
            "Shop commission updated",
            shop_id=shop_id,
            fee_type=fee_type.value,
            previous_rate=str(previous.rate),
            new_rate=str(new_rate),
            config_id=config.id,
        )
        return entry

    async def update_global_rate(
        self,
        new_rate: Decimal,
        reason: str,
        note: Optional[str] = None,
        actor_id: Optional[int] = None,
        override_shop_configs: bool = False,
        fee_type: FeeType = FeeType.PERCENTAGE,
        minimum_fee: Optional[Decimal] = None,
        maximum_fee: Optional[Decimal] = None,
    ) -> CommissionHistoryEntry:
        """
        更新全局佣金

        override_shop_configs 为真时，同一事务内关闭所有店铺自定义配置，
        每个被关闭的店铺记录一条历史，全局记录中注明关闭数量。

        Returns:
            全局变更历史记录
        """
        fee_type = FeeType(fee_type)
        new_rate = self._validate_rate(fee_type, new_rate, minimum_fee, maximum_fee)
        reason = self.require_text(reason, "COMMISSION_REASON_REQUIRED", "reason", REASON_MAX_LENGTH)
        note = self._validate_note(note)

        return await self.execute_with_transaction(
            self._update_global_rate_tx,
            fee_type, new_rate, reason, note, actor_id, override_shop_configs, minimum_fee, maximum_fee
        )

    async def _update_global_rate_tx(
        self,
        session: AsyncSession,
        fee_type: FeeType,
        new_rate: Decimal,
        reason: str,
        note: Optional[str],
        actor_id: Optional[int],
        override_shop_configs: bool,
        minimum_fee: Optional[Decimal],
        maximum_fee: Optional[Decimal],
    ) -> CommissionHistoryEntry:
        now = self.now()

        current_global = await self._find_open(session, CommissionScope.GLOBAL)
        if current_global is not None:
            previous_rate = current_global.rate_value
            await self._close_configs(session, [current_global.id], now)
        else:
            previous_rate = self.settings.commission_default_rate

        config = await self._insert_config(
            session,
            scope=CommissionScope.GLOBAL,
            shop_id=None,
            fee_type=fee_type,
            rate=new_rate,
            minimum_fee=minimum_fee,
            maximum_fee=maximum_fee,
            now=now,
            actor_id=actor_id,
        )

        superseded: List[Tuple[int, Decimal]] = []
        if override_shop_configs:
            result = await session.execute(
                select(CommissionConfig)
                .where(
                    CommissionConfig.scope == CommissionScope.SHOP.value,
                    CommissionConfig.effective_to.is_(None),
                )
                .order_by(CommissionConfig.shop_id)
            )
            shop_configs = list(result.scalars().all())
            if shop_configs:
                await self._close_configs(session, [c.id for c in shop_configs], now)
            superseded = [(c.shop_id, c.rate_value) for c in shop_configs]

            for shop_id, shop_rate in superseded:
                session.add(CommissionHistoryEntry(
                    shop_id=shop_id,
                    config_id=config.id,
                    fee_type=fee_type.value,
                    previous_rate=shop_rate,
                    new_rate=new_rate,
                    reason=reason,
                    note="Custom commission overridden by global update",
                    changed_by=actor_id,
                    created_at=now,
                ))

        global_note = note
        if override_shop_configs:
            override_note = f"Overrode {len(superseded)} shop commission configs"
            global_note = f"{note} | {override_note}" if note else override_note

        entry = CommissionHistoryEntry(
            shop_id=None,
            config_id=config.id,
            fee_type=fee_type.value,
            previous_rate=previous_rate,
            new_rate=new_rate,
            reason=reason,
            note=global_note[:NOTE_MAX_LENGTH] if global_note else None,
            changed_by=actor_id,
            superseded_count=len(superseded) if override_shop_configs else None,
            created_at=now,
        )
        session.add(entry)
        await session.flush()

        self.logger.info(
            "Global commission updated",
            fee_type=fee_type.value,
            previous_rate=str(previous_rate),
            new_rate=str(new_rate),
            override_shop_configs=override_shop_configs,
            superseded_count=len(superseded),
        )
        return entry

    async def get_history(
        self,
        shop_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CommissionHistoryEntry]:
        """查询佣金变更历史（新到旧）；shop_id 为空时返回全局变更"""
        return await self.execute_with_session(self._get_history, shop_id, limit, offset)

    async def _get_history(
        self,
        session: AsyncSession,
        shop_id: Optional[int],
        limit: int,
        offset: int,
    ) -> List[CommissionHistoryEntry]:
        stmt = select(CommissionHistoryEntry)
        if shop_id is None:
            stmt = stmt.where(CommissionHistoryEntry.shop_id.is_(None))
        else:
            stmt = stmt.where(CommissionHistoryEntry.shop_id == shop_id)

        stmt = stmt.order_by(
            CommissionHistoryEntry.created_at.desc(),
            CommissionHistoryEntry.id.desc(),
        ).offset(offset).limit(limit)

        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_shop_configs(
        self,
        limit: int = 50,
        offset: int = 0,
        include_inactive: bool = False,
    ) -> List[CommissionConfig]:
        """
        分页列出店铺自定义佣金配置

        Args:
            limit: 每页大小
            offset: 偏移量
            include_inactive: 为真时同时返回已关闭的历史窗口

        Returns:
            按 shop_id 升序、同店铺内生效时间新到旧排列的配置
        """
        return await self.execute_with_session(self._list_shop_configs, limit, offset, include_inactive)

    async def _list_shop_configs(
        self,
        session: AsyncSession,
        limit: int,
        offset: int,
        include_inactive: bool,
    ) -> List[CommissionConfig]:
        stmt = select(CommissionConfig).where(CommissionConfig.scope == CommissionScope.SHOP.value)
        if not include_inactive:
            stmt = stmt.where(CommissionConfig.effective_to.is_(None))

        stmt = stmt.order_by(
            CommissionConfig.shop_id,
            CommissionConfig.effective_from.desc(),
            CommissionConfig.id.desc(),
        ).offset(offset).limit(limit)

        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _find_effective(
        self,
        session: AsyncSession,
        scope: CommissionScope,
        at: datetime,
        shop_id: Optional[int] = None,
    ) -> Optional[CommissionConfig]:
        """查找 effective_from <= at < effective_to 的配置"""
        stmt = select(CommissionConfig).where(
            CommissionConfig.scope == scope.value,
            CommissionConfig.effective_from <= at,
            or_(CommissionConfig.effective_to.is_(None), CommissionConfig.effective_to > at),
        )
        if shop_id is not None:
            stmt = stmt.where(CommissionConfig.shop_id == shop_id)

        stmt = stmt.order_by(CommissionConfig.effective_from.desc(), CommissionConfig.id.desc()).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_open(
        self,
        session: AsyncSession,
        scope: CommissionScope,
        shop_id: Optional[int] = None,
    ) -> Optional[CommissionConfig]:
        """查找未关闭的配置"""
        stmt = select(CommissionConfig).where(
            CommissionConfig.scope == scope.value,
            CommissionConfig.effective_to.is_(None),
        )
        if shop_id is not None:
            stmt = stmt.where(CommissionConfig.shop_id == shop_id)

        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _close_configs(self, session: AsyncSession, config_ids: List[int], now: datetime) -> None:
        """条件关闭配置：只关闭仍未关闭的记录，数量不符说明有并发修改"""
        result = await session.execute(
            update(CommissionConfig)
            .where(
                CommissionConfig.id.in_(config_ids),
                CommissionConfig.effective_to.is_(None),
            )
            .values(effective_to=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(config_ids):
            raise ConcurrentModificationError(
                code="COMMISSION_CONCURRENT_UPDATE",
                detail="Commission configuration was changed concurrently, please retry",
            )

    async def _insert_config(
        self,
        session: AsyncSession,
        scope: CommissionScope,
        shop_id: Optional[int],
        fee_type: FeeType,
        rate: Decimal,
        minimum_fee: Optional[Decimal],
        maximum_fee: Optional[Decimal],
        now: datetime,
        actor_id: Optional[int],
    ) -> CommissionConfig:
        config = CommissionConfig(
            scope=scope.value,
            shop_id=shop_id,
            fee_type=fee_type.value,
            percentage_rate=rate if fee_type == FeeType.PERCENTAGE else None,
            fixed_amount=rate if fee_type == FeeType.FIXED else None,
            minimum_fee=minimum_fee,
            maximum_fee=maximum_fee,
            effective_from=now,
            is_custom=scope == CommissionScope.SHOP,
            created_by=actor_id,
            created_at=now,
        )
        session.add(config)
        try:
            await session.flush()
        except IntegrityError:
            # 部分唯一索引：同一作用域只能有一条未关闭的配置
            raise ConcurrentModificationError(
                code="COMMISSION_CONCURRENT_UPDATE",
                detail="Another commission configuration became active concurrently, please retry",
            )
        return config

    @staticmethod
    def _validate_rate(
        fee_type: FeeType,
        rate,
        minimum_fee: Optional[Decimal],
        maximum_fee: Optional[Decimal],
    ) -> Decimal:
        try:
            rate = Decimal(str(rate))
        except (ArithmeticError, ValueError, TypeError):
            raise ValidationError(code="COMMISSION_INVALID_RATE", detail=f"Invalid commission rate: {rate}")
        if not rate.is_finite():
            raise ValidationError(code="COMMISSION_INVALID_RATE", detail=f"Invalid commission rate: {rate}")

        if fee_type == FeeType.PERCENTAGE and not (Decimal("0") <= rate <= Decimal("100")):
            raise OutOfRangeError(detail=f"Percentage rate must be between 0 and 100, got {rate}")
        if fee_type == FeeType.FIXED and rate < 0:
            raise OutOfRangeError(detail=f"Fixed commission must be non-negative, got {rate}")

        for name, value in (("minimum_fee", minimum_fee), ("maximum_fee", maximum_fee)):
            if value is not None and value < 0:
                raise OutOfRangeError(detail=f"{name} must be non-negative, got {value}")
        if minimum_fee is not None and maximum_fee is not None and minimum_fee > maximum_fee:
            raise OutOfRangeError(detail="minimum_fee must not exceed maximum_fee")
        return rate

    def _validate_note(self, note: Optional[str]) -> Optional[str]:
        if note is None or not note.strip():
            return None
        note = note.strip()
        if len(note) > NOTE_MAX_LENGTH:
            raise ValidationError(
                code="COMMISSION_NOTE_TOO_LONG",
                detail=f"note must be at most {NOTE_MAX_LENGTH} characters"
            )
        return note
