"""数据库管理器 —— 统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.invoices``、``db.spare_parts`` 等属性直接访问子仓库，
   返回 ORM 对象，适合需要精细控制的场景。

2. **便捷方法**（粗粒度）：
   提供扁平化的方法（如 ``create_invoice()``、``get_summary()``），
   返回字典/基本类型，金额为 float，适合界面层和 API 调用。
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Session

from .connection import DatabaseConnection
from .entity_repos import CustomerRepository, VehicleRepository, ServiceRepository
from .inventory_repos import SparePartRepository
from .business_repos import InvoiceRepository, PaymentRepository
from .report_repos import ExpenseRepository, FinancialReportRepository
from .models import Payment, SparePart, FinancialTransaction


def _money(value: Optional[Decimal]) -> float:
    return float(value) if value is not None else 0.0


class DatabaseManager:
    """数据库管理器 —— 统一门面。

    Attributes:
        conn: 数据库连接管理器。
        customers: 顾客仓库。
        vehicles: 车辆仓库。
        services: 服务工单仓库。
        spare_parts: 备件（库存台账）仓库。
        invoices: 发票仓库。
        payments: 付款仓库。
        expenses: 支出仓库。
        reports: 财务报表仓库。

    Example::

        db = DatabaseManager("sqlite:///data/workshop.db")
        db.create_tables()

        # 通过子仓库访问（返回 ORM 对象）
        parts = db.spare_parts.list_low_stock()

        # 通过便捷方法访问（返回字典）
        summary = db.get_summary("monthly")
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
        """
        # 基础设施层
        self.conn = DatabaseConnection(database_url)

        # 实体仓库
        self.customers = CustomerRepository(self.conn)
        self.vehicles = VehicleRepository(self.conn)
        self.services = ServiceRepository(self.conn)
        self.spare_parts = SparePartRepository(self.conn)

        # 开票与收款
        self.invoices = InvoiceRepository(self.conn, self.spare_parts)
        self.payments = PaymentRepository(self.conn, self.invoices)

        # 报表
        self.expenses = ExpenseRepository(self.conn)
        self.reports = FinancialReportRepository(self.conn)

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """获取数据库会话。"""
        return self.conn.get_session()

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy 引擎对象。"""
        return self.conn.engine

    def execute_raw_sql(self, sql: str,
                        params: Optional[dict] = None) -> Any:
        """执行原始 SQL 语句。

        注意：应优先使用 ORM 方法，仅在必要时使用原始 SQL。
        """
        return self.conn.execute_raw_sql(sql, params)

    def close(self) -> None:
        """关闭数据库连接，释放所有资源。"""
        self.conn.close()

    # ================================================================
    # 便捷写入方法
    # ================================================================

    def create_invoice(self, service_id: str, items: List[Dict[str, Any]],
                       **options) -> Dict[str, Any]:
        """为已完成的工单开具发票。

        Args:
            service_id: 工单ID。
            items: 发票明细列表，详见 InvoiceRepository.create_invoice。
            **options: tax_rate_percent、discount_amount、notes、status、
                issue_date。

        Returns:
            发票信息字典。
        """
        invoice = self.invoices.create_invoice(service_id, items, **options)
        return self.get_invoice_info(invoice.id)

    def process_payment(self, invoice_id: str, amount: Any,
                        payment_method: Optional[str],
                        **options) -> Dict[str, Any]:
        """登记付款。

        Args:
            invoice_id: 发票ID。
            amount: 付款金额。
            payment_method: 付款方式。
            **options: reference_number、notes、payment_date、
                expected_version。

        Returns:
            付款信息字典，另含发票最新状态和剩余应付。
        """
        payment = self.payments.process_payment(
            invoice_id, amount, payment_method, **options
        )
        info = self._payment_dict(payment)
        invoice = self.invoices.get_invoice(invoice_id)
        info["invoice_status"] = invoice.status
        info["remaining"] = _money(self.invoices.get_remaining(invoice_id))
        return info

    def adjust_stock(self, spare_part_id: str, delta: int,
                     movement_type: str,
                     notes: Optional[str] = None) -> Dict[str, Any]:
        """调整备件库存，返回更新后的备件信息。"""
        part = self.spare_parts.adjust_stock(
            spare_part_id, delta, movement_type, notes
        )
        return self._part_dict(part)

    def add_expense(self, amount: Any, category: str,
                    description: Optional[str] = None,
                    transaction_date: Optional[datetime] = None
                    ) -> Dict[str, Any]:
        """登记支出。"""
        expense = self.expenses.add_expense(
            amount, category, description, transaction_date
        )
        return self._expense_dict(expense)

    # ================================================================
    # 便捷查询方法
    # ================================================================

    def list_low_stock(self) -> List[Dict[str, Any]]:
        """获取低库存备件列表。"""
        return [self._part_dict(p) for p in self.spare_parts.list_low_stock()]

    def get_recent_expenses(self, limit: Optional[int] = None
                            ) -> List[Dict[str, Any]]:
        """获取最近的支出记录。"""
        return [
            self._expense_dict(e)
            for e in self.expenses.get_recent_expenses(limit)
        ]

    def get_summary(self, period: str,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
        """周期汇总（daily / weekly / monthly）。"""
        return self.reports.get_summary(period, now)

    def get_trends(self, n_days: int = 7,
                   now: Optional[datetime] = None) -> Dict[str, List[Any]]:
        """按日收支趋势。"""
        return self.reports.get_trends(n_days, now)

    def get_monthly_trends(self, n_months: int = 6,
                           now: Optional[datetime] = None
                           ) -> Dict[str, List[Any]]:
        """按月收支趋势。"""
        return self.reports.get_monthly_trends(n_months, now)

    def get_expense_breakdown(self, period: str,
                              now: Optional[datetime] = None
                              ) -> Dict[str, Any]:
        """按分类的支出明细。"""
        return self.reports.get_expense_breakdown(period, now)

    def get_service_list(self) -> List[Dict[str, Any]]:
        """获取工单列表（含开票、收款状态）。"""
        return self.services.list_with_billing()

    def get_customer_history(self, customer_id: str) -> List[Dict[str, Any]]:
        """获取顾客的服务历史（最近的在前）。"""
        return self.customers.get_service_history(customer_id)

    def get_invoice_info(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        """获取发票信息（含明细和付款），不存在返回 None。"""
        invoice = self.invoices.get_invoice(invoice_id)
        if invoice is None:
            return None

        payments = sorted(invoice.payments, key=lambda p: p.payment_date)
        paid = sum(
            (p.amount for p in payments if p.status == "completed"),
            Decimal("0")
        )
        return {
            "id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "service_id": invoice.service_id,
            "customer_id": invoice.customer_id,
            "vehicle_id": invoice.vehicle_id,
            "subtotal": _money(invoice.subtotal),
            "tax_amount": _money(invoice.tax_amount),
            "discount_amount": _money(invoice.discount_amount),
            "total_amount": _money(invoice.total_amount),
            "paid_amount": _money(paid),
            "remaining": _money(invoice.total_amount - paid),
            "status": invoice.status,
            "display_status": self.invoices.derive_status(
                invoice.status, invoice.total_amount, paid
            ),
            "issue_date": invoice.issue_date,
            "due_date": invoice.due_date,
            "version": invoice.version,
            "notes": invoice.notes,
            "items": [
                {
                    "item_type": item.item_type,
                    "item_id": item.item_id,
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit_price": _money(item.unit_price),
                    "total_price": _money(item.total_price),
                }
                for item in invoice.items
            ],
            "payments": [self._payment_dict(p) for p in payments],
        }

    # ================================================================
    # 转换
    # ================================================================

    @staticmethod
    def _payment_dict(payment: Payment) -> Dict[str, Any]:
        return {
            "id": payment.id,
            "payment_number": payment.payment_number,
            "invoice_id": payment.invoice_id,
            "amount": _money(payment.amount),
            "payment_method": payment.payment_method,
            "reference_number": payment.reference_number,
            "status": payment.status,
            "payment_date": payment.payment_date,
        }

    @staticmethod
    def _part_dict(part: SparePart) -> Dict[str, Any]:
        return {
            "id": part.id,
            "name": part.name,
            "category": part.category,
            "purchase_price": _money(part.purchase_price),
            "sale_price": _money(part.sale_price),
            "stock": part.stock,
            "min_stock": part.min_stock,
            "supplier": part.supplier,
            "is_low_stock": part.is_low_stock,
        }

    @staticmethod
    def _expense_dict(expense: FinancialTransaction) -> Dict[str, Any]:
        return {
            "id": expense.id,
            "amount": _money(expense.amount),
            "category": expense.category,
            "description": expense.description,
            "transaction_date": expense.transaction_date,
        }
