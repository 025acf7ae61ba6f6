"""报表仓库 —— 支出登记与财务汇总。

收入只按已完成的付款计算；系统生成的收入流水（开票、收款时写入）
仅供查阅，不参与汇总，避免重复计算。
支出 = 手工录入的支出流水 + 服务消耗备件的成本（数量 × 进价）。

所有报表方法都是只读的，传入相同的 now 结果相同。
"""
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple
from sqlalchemy.orm import Session
from loguru import logger

from config.business_config import ExpenseGroup, UNCATEGORIZED, business_config
from config.settings import settings
from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .errors import ValidationError
from .models import FinancialTransaction, Payment, Service, ServicePart, SparePart

PERIODS = ("daily", "weekly", "monthly")

ZERO = Decimal("0")


def period_start(period: str, now: datetime) -> datetime:
    """统计区间起点（含）。

    - daily：今天零点
    - weekly：now 往前 7 天
    - monthly：本月1日零点

    Raises:
        ValidationError: 未知的统计周期。
    """
    if period == "daily":
        return datetime.combine(now.date(), time())
    if period == "weekly":
        return now - timedelta(days=7)
    if period == "monthly":
        return datetime.combine(now.date().replace(day=1), time())
    raise ValidationError(
        f"Invalid period: {period}, expected one of {', '.join(PERIODS)}"
    )


class ExpenseRepository(BaseCRUD):
    """支出 仓库。

    手工录入经营支出和其他支出，分类必须属于 ExpenseGroup。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def add_expense(self, amount: Any, category: str,
                    description: Optional[str] = None,
                    transaction_date: Optional[datetime] = None,
                    session: Optional[Session] = None) -> FinancialTransaction:
        """登记一笔支出。

        Args:
            amount: 金额，> 0。
            category: 支出分类（ExpenseGroup 中的子分类）。
            description: 说明（可选）。
            transaction_date: 发生时间（可选，默认现在）。

        Raises:
            ValidationError: 金额不为正或分类未知。
        """
        amount = self._to_decimal(amount, "Amount")
        if amount <= 0:
            raise ValidationError("Expense amount must be positive")
        if category not in ExpenseGroup.all_categories():
            raise ValidationError(f"Unknown expense category: {category}")
        if isinstance(transaction_date, date) and not isinstance(transaction_date, datetime):
            transaction_date = datetime.combine(transaction_date, time())

        expense = self.create(
            FinancialTransaction, session=session,
            transaction_type="expense",
            amount=amount,
            category=category,
            description=description,
            transaction_date=transaction_date or datetime.now(),
        )
        logger.info(f"Expense recorded: {category} {amount}")
        return expense

    def get_recent_expenses(self, limit: Optional[int] = None,
                            session: Optional[Session] = None
                            ) -> List[FinancialTransaction]:
        """获取最近的支出记录（最新的在前）。"""
        if limit is None:
            limit = settings.recent_expense_limit
        if limit < 0:
            raise ValidationError("limit must not be negative")

        def _query(sess):
            return sess.query(FinancialTransaction).filter(
                FinancialTransaction.transaction_type == "expense"
            ).order_by(
                FinancialTransaction.transaction_date.desc()
            ).limit(limit).all()

        return self._read(_query, session)

    @staticmethod
    def get_all_categories() -> Dict[str, List[str]]:
        """按分组返回全部支出分类。"""
        return {group.key: list(group.subcategories) for group in ExpenseGroup}


class FinancialReportRepository(BaseCRUD):
    """财务报表 仓库。

    提供周期汇总（收入 / 支出 / 利润）、按日和按月的趋势，
    以及按分类的支出明细。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    # ================================================================
    # 原始数据
    # ================================================================

    @staticmethod
    def _payments(sess: Session, start: datetime,
                  end: Optional[datetime] = None,
                  inclusive: bool = False) -> List[Tuple[datetime, Decimal]]:
        """已完成付款：(付款时间, 金额)。inclusive 为真时包含 end 本身。"""
        query = sess.query(Payment.payment_date, Payment.amount).filter(
            Payment.status == "completed",
            Payment.payment_date >= start
        )
        if end is not None:
            query = query.filter(
                Payment.payment_date <= end if inclusive
                else Payment.payment_date < end
            )
        return [(row.payment_date, row.amount) for row in query.all()]

    @staticmethod
    def _expenses(sess: Session, start: datetime,
                  end: Optional[datetime] = None, inclusive: bool = False
                  ) -> List[Tuple[datetime, Optional[str], Decimal]]:
        query = sess.query(
            FinancialTransaction.transaction_date,
            FinancialTransaction.category,
            FinancialTransaction.amount,
        ).filter(
            FinancialTransaction.transaction_type == "expense",
            FinancialTransaction.transaction_date >= start
        )
        if end is not None:
            spent_at = FinancialTransaction.transaction_date
            query = query.filter(
                spent_at <= end if inclusive else spent_at < end
            )
        return [
            (row.transaction_date, row.category, row.amount)
            for row in query.all()
        ]

    @staticmethod
    def _part_usage(sess: Session, start: date,
                    end: Optional[date] = None
                    ) -> List[Tuple[date, str, int, Decimal]]:
        """服务消耗的备件：(服务日期, 备件名, 数量, 单位成本)。

        单位成本优先使用使用时的进价快照，缺失时按备件当前进价。
        """
        query = sess.query(
            Service.service_date,
            SparePart.name,
            ServicePart.quantity,
            ServicePart.unit_cost,
            SparePart.purchase_price,
        ).select_from(ServicePart).join(
            Service, ServicePart.service_id == Service.id
        ).join(
            SparePart, ServicePart.spare_part_id == SparePart.id
        ).filter(Service.service_date >= start)
        if end is not None:
            query = query.filter(Service.service_date < end)
        return [
            (
                row.service_date, row.name, row.quantity,
                row.unit_cost if row.unit_cost is not None
                else (row.purchase_price or ZERO),
            )
            for row in query.all()
        ]

    # ================================================================
    # 周期汇总
    # ================================================================

    def get_summary(self, period: str, now: Optional[datetime] = None,
                    session: Optional[Session] = None) -> Dict[str, Any]:
        """周期汇总。

        Args:
            period: daily / weekly / monthly。
            now: 当前时间（可选，默认现在）。

        Returns:
            包含 income、expenses、profit、transaction_count 的字典。

        Raises:
            ValidationError: 未知的统计周期。
        """
        now = now or datetime.now()
        start = period_start(period, now)
        # 区间为 [start, now]；备件按服务日期统计，截止到今天
        end_day = now.date() + timedelta(days=1)

        def _query(sess):
            payments = self._payments(sess, start, now, inclusive=True)
            income = sum((amount for _, amount in payments), ZERO)
            expense_rows = self._expenses(sess, start, now, inclusive=True)
            manual = sum((amount for _, _, amount in expense_rows), ZERO)
            parts_cost = sum(
                (quantity * cost for _, _, quantity, cost
                 in self._part_usage(sess, start.date(), end_day)),
                ZERO
            )
            expenses = manual + parts_cost
            return {
                "period": period,
                "income": float(income),
                "expenses": float(expenses),
                "profit": float(income - expenses),
                "transaction_count": len(payments),
            }

        return self._read(_query, session)

    # ================================================================
    # 趋势
    # ================================================================

    def get_trends(self, n_days: int = 7, now: Optional[datetime] = None,
                   session: Optional[Session] = None) -> Dict[str, List[Any]]:
        """按日趋势：以今天结尾的 n_days 个自然日，无数据的日期补0。

        Returns:
            包含 dates、labels（星期缩写）、income、expenses、profit 的字典，
            按日期升序。
        """
        if n_days < 1:
            raise ValidationError("n_days must be at least 1")
        now = now or datetime.now()
        first_day = now.date() - timedelta(days=n_days - 1)
        days = [first_day + timedelta(days=i) for i in range(n_days)]
        end_day = days[-1] + timedelta(days=1)

        def _query(sess):
            buckets = self._bucketize(
                sess, days, first_day, end_day, key=lambda d: d
            )
            labels = business_config.get_weekday_labels()
            return self._trend_result(
                buckets, [labels[d.weekday()] for d in days],
                [d.isoformat() for d in days]
            )

        return self._read(_query, session)

    def get_monthly_trends(self, n_months: int = 6,
                           now: Optional[datetime] = None,
                           session: Optional[Session] = None
                           ) -> Dict[str, List[Any]]:
        """按月趋势：以本月结尾的 n_months 个自然月，无数据的月份补0。

        Returns:
            包含 dates（YYYY-MM）、labels（月份缩写）、income、expenses、
            profit 的字典，按月份升序。
        """
        if n_months < 1:
            raise ValidationError("n_months must be at least 1")
        now = now or datetime.now()
        months = []
        year, month = now.year, now.month
        for _ in range(n_months):
            months.append((year, month))
            year, month = (year - 1, 12) if month == 1 else (year, month - 1)
        months.reverse()

        first_day = date(months[0][0], months[0][1], 1)
        last_year, last_month = months[-1]
        end_day = (date(last_year + 1, 1, 1) if last_month == 12
                   else date(last_year, last_month + 1, 1))

        def _query(sess):
            buckets = self._bucketize(
                sess, months, first_day, end_day,
                key=lambda d: (d.year, d.month)
            )
            labels = business_config.get_month_labels()
            return self._trend_result(
                buckets, [labels[m - 1] for _, m in months],
                [f"{y:04d}-{m:02d}" for y, m in months]
            )

        return self._read(_query, session)

    def _bucketize(self, sess: Session, keys: List[Any], first_day: date,
                   end_day: date, key) -> "OrderedDict[Any, Dict[str, Decimal]]":
        """把 [first_day, end_day) 内的收入与支出按 key 分桶。"""
        start = datetime.combine(first_day, time())
        end = datetime.combine(end_day, time())
        buckets = OrderedDict(
            (k, {"income": ZERO, "expenses": ZERO}) for k in keys
        )
        for paid_at, amount in self._payments(sess, start, end):
            buckets[key(paid_at.date())]["income"] += amount
        for spent_at, _, amount in self._expenses(sess, start, end):
            buckets[key(spent_at.date())]["expenses"] += amount
        for used_on, _, quantity, cost in self._part_usage(sess, first_day, end_day):
            buckets[key(used_on)]["expenses"] += quantity * cost
        return buckets

    @staticmethod
    def _trend_result(buckets: "OrderedDict[Any, Dict[str, Decimal]]",
                      labels: List[str], dates: List[str]) -> Dict[str, List[Any]]:
        values = list(buckets.values())
        return {
            "dates": dates,
            "labels": labels,
            "income": [float(v["income"]) for v in values],
            "expenses": [float(v["expenses"]) for v in values],
            "profit": [float(v["income"] - v["expenses"]) for v in values],
        }

    # ================================================================
    # 支出明细
    # ================================================================

    def get_expense_breakdown(self, period: str,
                              now: Optional[datetime] = None,
                              session: Optional[Session] = None
                              ) -> Dict[str, Any]:
        """按分类的支出明细。

        手工支出按 ExpenseGroup 分为 operational / other 两组，
        不属于任何组的分类计入 other；备件成本按备件名汇总数量和成本。

        Returns:
            ``{operational: {total, by_category}, other: {total, by_category},
            spare_parts: {total, by_name: {name: {quantity, cost}}},
            grand_total}``

        Raises:
            ValidationError: 未知的统计周期。
        """
        now = now or datetime.now()
        start = period_start(period, now)
        end_day = now.date() + timedelta(days=1)

        def _query(sess):
            groups = {
                group.key: {"total": ZERO, "by_category": {}}
                for group in ExpenseGroup
            }
            for _, category, amount in self._expenses(
                sess, start, now, inclusive=True
            ):
                group = ExpenseGroup.of(category) or ExpenseGroup.OTHER
                label = category or UNCATEGORIZED
                bucket = groups[group.key]
                bucket["total"] += amount
                bucket["by_category"][label] = (
                    bucket["by_category"].get(label, ZERO) + amount
                )

            parts_total = ZERO
            by_name: Dict[str, Dict[str, Any]] = {}
            for _, name, quantity, cost in self._part_usage(
                sess, start.date(), end_day
            ):
                entry = by_name.setdefault(name, {"quantity": 0, "cost": ZERO})
                entry["quantity"] += quantity
                entry["cost"] += quantity * cost
                parts_total += quantity * cost

            grand_total = parts_total + sum(
                (bucket["total"] for bucket in groups.values()), ZERO
            )
            result = {
                key: {
                    "total": float(bucket["total"]),
                    "by_category": {
                        label: float(amount)
                        for label, amount in sorted(bucket["by_category"].items())
                    },
                }
                for key, bucket in groups.items()
            }
            result["spare_parts"] = {
                "total": float(parts_total),
                "by_name": {
                    name: {"quantity": entry["quantity"],
                           "cost": float(entry["cost"])}
                    for name, entry in sorted(by_name.items())
                },
            }
            result["grand_total"] = float(grand_total)
            return result

        return self._read(_query, session)
