"""业务记录仓库 —— 开票与收款。

管理修理厂的核心交易数据：
- InvoiceRepository：根据已完成的工单开具发票，写入明细、备件使用记录、
  出库流水和收入流水
- PaymentRepository：登记部分或全部付款，重新汇总已付金额并回写发票状态

开票的所有写入在同一个事务中完成，任一步失败全部回滚。
付款通过发票 version 字段做乐观锁，防止并发付款合计超付。
"""
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Dict, Any
from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload
from loguru import logger

from config.business_config import (
    PAYMENT_METHODS, CATEGORY_SERVICE_PAYMENT, CATEGORY_PAYMENT_RECEIVED
)
from config.settings import settings
from .base_crud import BaseCRUD, CENT
from .connection import DatabaseConnection
from .errors import (
    ConcurrentModification, ConflictError, DuplicateInvoice, EmptyItemList,
    InvoiceNotFound, MissingPaymentMethod, MissingService,
    OverpaymentRejected, SparePartNotFound, ValidationError
)
from .inventory_repos import SparePartRepository
from .models import (
    Invoice, InvoiceItem, Payment, Service, ServicePart, SparePart,
    FinancialTransaction
)

ITEM_TYPES = ("service", "sparepart")
CREATABLE_INVOICE_STATUSES = ("draft", "issued")


def generate_number(session: Session, prefix: str, column: Any,
                    now: datetime) -> str:
    """生成单号：<PREFIX>-<YYYYMMDD>-<毫秒时间戳后四位>。

    与已有单号冲突时顺延后缀。

    Raises:
        ConflictError: 当天的四位后缀已全部占用。
    """
    stamp = now.strftime("%Y%m%d")
    suffix = int(now.timestamp() * 1000) % 10000
    for _ in range(10000):
        number = f"{prefix}-{stamp}-{suffix:04d}"
        exists = session.query(column).filter(column == number).first()
        if not exists:
            return number
        suffix = (suffix + 1) % 10000
    raise ConflictError(f"No free {prefix} number left for {stamp}")


class InvoiceRepository(BaseCRUD):
    """发票 仓库（开票器）。

    一个已完成的工单只能开一张发票。发票金额在创建时确定：
    subtotal = Σ 明细金额，tax = subtotal × 税率 / 100，
    total = subtotal + tax - discount。
    """

    def __init__(self, conn: DatabaseConnection,
                 spare_part_repo: SparePartRepository) -> None:
        super().__init__(conn)
        self._spare_parts = spare_part_repo

    def create_invoice(self, service_id: str, items: List[Dict[str, Any]],
                       tax_rate_percent: Optional[Any] = None,
                       discount_amount: Any = 0,
                       notes: Optional[str] = None,
                       status: str = "issued",
                       issue_date: Optional[date] = None,
                       session: Optional[Session] = None) -> Invoice:
        """为已完成的工单开具发票。

        Args:
            service_id: 工单ID。
            items: 发票明细列表，每项支持以下键：
                - item_type: service / sparepart（必填）
                - item_id: 关联的工单ID或备件ID（sparepart 必填）
                - description: 描述（可选，默认使用工单或备件信息）
                - quantity: 数量（必填，> 0）
                - unit_price: 单价（必填，>= 0）
                必须恰好包含一项 service 明细，且单价等于工单工时费。
            tax_rate_percent: 税率百分比，默认 settings.default_tax_rate_percent。
            discount_amount: 折扣金额，默认0。
            notes: 备注（可选）。
            status: 发票状态，draft 或 issued，默认 issued。
            issue_date: 开票日期（可选，默认今天）。
            session: 外部会话（可选）。

        Returns:
            新建的 Invoice 对象（含明细）。

        Raises:
            EmptyItemList: 明细为空。
            ValidationError: 明细、税率、折扣或状态不合法，工单未完成，
                或合计为负。
            MissingService: 工单不存在。
            DuplicateInvoice: 工单已有发票。
            SparePartNotFound: 明细引用的备件不存在。
            InvalidStockOperation: 备件库存不足（整张发票回滚）。
        """
        if not items:
            raise EmptyItemList("Invoice needs at least one item")
        if status not in CREATABLE_INVOICE_STATUSES:
            raise ValidationError(f"Invalid invoice status: {status}")
        if tax_rate_percent is None:
            tax_rate_percent = settings.default_tax_rate_percent
        tax_rate = self._to_decimal(tax_rate_percent, "Tax rate", places=None)
        discount = self._to_decimal(discount_amount or 0, "Discount")
        if tax_rate < 0 or discount < 0:
            raise ValidationError("Tax rate and discount must not be negative")

        lines = [self._normalize_item(item) for item in items]
        service_lines = [line for line in lines if line["item_type"] == "service"]
        if len(service_lines) != 1:
            raise ValidationError(
                f"Invoice needs exactly one service item, got {len(service_lines)}"
            )

        subtotal = sum((line["total_price"] for line in lines), Decimal("0"))
        tax = (subtotal * tax_rate / 100).quantize(CENT, rounding=ROUND_HALF_UP)
        total = subtotal + tax - discount
        if total < 0:
            raise ValidationError(
                f"Discount {discount} exceeds subtotal plus tax {subtotal + tax}"
            )

        now = datetime.now()
        issue_date = issue_date or now.date()

        with self._transaction(session) as sess:
            service = sess.get(Service, service_id)
            if service is None:
                raise MissingService(f"Service not found: {service_id}")
            if service.status != "completed":
                raise ValidationError(
                    f"Service {service_id} is '{service.status}', "
                    f"only completed services can be invoiced"
                )
            existing = sess.query(Invoice).filter(
                Invoice.service_id == service_id
            ).first()
            if existing:
                raise DuplicateInvoice(
                    f"Service {service_id} already has invoice "
                    f"{existing.invoice_number}"
                )
            if service_lines[0]["unit_price"] != service.cost:
                raise ValidationError(
                    f"Service item price {service_lines[0]['unit_price']} "
                    f"does not match service cost {service.cost}"
                )

            parts = {}
            for line in lines:
                if line["item_type"] != "sparepart":
                    continue
                part = sess.get(SparePart, line["item_id"])
                if part is None:
                    raise SparePartNotFound(
                        f"Spare part not found: {line['item_id']}"
                    )
                parts[part.id] = part

            invoice_number = generate_number(
                sess, "INV", Invoice.invoice_number, now
            )
            invoice = Invoice(
                invoice_number=invoice_number,
                service_id=service.id,
                customer_id=service.customer_id,
                vehicle_id=service.vehicle_id,
                subtotal=subtotal,
                tax_amount=tax,
                discount_amount=discount,
                total_amount=total,
                status=status,
                issue_date=issue_date,
                due_date=issue_date + timedelta(days=settings.invoice_due_days),
                notes=notes,
            )
            sess.add(invoice)

            customer_name = service.customer.name if service.customer else ""
            for line in lines:
                description = line["description"]
                if not description:
                    if line["item_type"] == "service":
                        vehicle = service.vehicle
                        description = (
                            f"Servis {vehicle.brand} {vehicle.model} - "
                            f"{service.complaint}"
                        )
                    else:
                        description = parts[line["item_id"]].name
                invoice.items.append(InvoiceItem(
                    item_type=line["item_type"],
                    item_id=(line["item_id"] if line["item_type"] == "sparepart"
                             else service.id),
                    description=description,
                    quantity=line["quantity"],
                    unit_price=line["unit_price"],
                    total_price=line["total_price"],
                ))
            sess.flush()

            for line in lines:
                if line["item_type"] != "sparepart":
                    continue
                part = parts[line["item_id"]]
                sess.add(ServicePart(
                    service_id=service.id,
                    spare_part_id=part.id,
                    quantity=line["quantity"],
                    unit_price=line["unit_price"],
                    unit_cost=part.purchase_price,
                ))
                self._spare_parts.adjust_stock(
                    part.id, -line["quantity"], "out",
                    f"Digunakan untuk servis {customer_name} - "
                    f"Invoice {invoice_number}",
                    session=sess
                )

            sess.add(FinancialTransaction(
                transaction_type="income",
                amount=total,
                category=CATEGORY_SERVICE_PAYMENT,
                description=f"Invoice {invoice_number} - {customer_name}",
                transaction_date=now,
                service_id=service.id,
            ))
            sess.flush()

            logger.info(
                f"Invoice {invoice_number} created for service {service.id}: "
                f"subtotal {subtotal}, tax {tax}, discount {discount}, "
                f"total {total} ({status})"
            )
            return invoice

    def _normalize_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """校验并规范化一条发票明细。"""
        item_type = item.get("item_type")
        if item_type not in ITEM_TYPES:
            raise ValidationError(f"Invalid invoice item type: {item_type}")
        if item_type == "sparepart" and not item.get("item_id"):
            raise ValidationError("Spare part items need item_id")

        quantity = item.get("quantity")
        if (isinstance(quantity, bool) or not isinstance(quantity, int)
                or quantity <= 0):
            raise ValidationError(
                f"Item quantity must be a positive integer, got {quantity!r}"
            )
        unit_price = self._to_decimal(item.get("unit_price"), "Unit price")
        if unit_price < 0:
            raise ValidationError("Unit price must not be negative")

        return {
            "item_type": item_type,
            "item_id": item.get("item_id"),
            "description": item.get("description") or "",
            "quantity": quantity,
            "unit_price": unit_price,
            "total_price": (unit_price * quantity).quantize(CENT),
        }

    def issue(self, invoice_id: str,
              session: Optional[Session] = None) -> Invoice:
        """把草稿发票改为已开具。

        Raises:
            InvoiceNotFound: 发票不存在。
            ValidationError: 发票不是草稿。
        """
        with self._transaction(session) as sess:
            invoice = sess.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFound(f"Invoice not found: {invoice_id}")
            if invoice.status != "draft":
                raise ValidationError(
                    f"Invoice {invoice.invoice_number} is '{invoice.status}', "
                    f"only drafts can be issued"
                )
            invoice.status = "issued"
            sess.flush()
            logger.info(f"Invoice {invoice.invoice_number} issued")
            return invoice

    def get_invoice(self, invoice_id: str,
                    session: Optional[Session] = None) -> Optional[Invoice]:
        """获取发票（含明细和付款），不存在返回 None。"""
        def _query(sess):
            return sess.query(Invoice).options(
                selectinload(Invoice.items),
                selectinload(Invoice.payments),
            ).filter(Invoice.id == invoice_id).first()

        return self._read(_query, session)

    def get_by_service(self, service_id: str,
                       session: Optional[Session] = None
                       ) -> Optional[Invoice]:
        def _query(sess):
            return sess.query(Invoice).options(
                selectinload(Invoice.items),
                selectinload(Invoice.payments),
            ).filter(Invoice.service_id == service_id).first()

        return self._read(_query, session)

    def get_paid_amount(self, invoice_id: str,
                        session: Optional[Session] = None) -> Decimal:
        """已付金额：该发票所有 completed 付款的合计（每次实时汇总）。"""
        def _query(sess):
            amounts = sess.query(Payment.amount).filter(
                Payment.invoice_id == invoice_id,
                Payment.status == "completed"
            ).all()
            return sum((row.amount for row in amounts), Decimal("0"))

        return self._read(_query, session)

    def get_remaining(self, invoice_id: str,
                      session: Optional[Session] = None) -> Decimal:
        """剩余应付金额。

        Raises:
            InvoiceNotFound: 发票不存在。
        """
        def _query(sess):
            invoice = sess.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFound(f"Invoice not found: {invoice_id}")
            return invoice.total_amount - self.get_paid_amount(
                invoice_id, session=sess
            )

        return self._read(_query, session)

    @staticmethod
    def derive_status(status: str, total: Decimal, paid: Decimal) -> str:
        """由已付金额推导的显示状态：draft / issued / partial / paid。"""
        if status == "draft":
            return "draft"
        if paid >= total:
            return "paid"
        if paid > 0:
            return "partial"
        return "issued"


class PaymentRepository(BaseCRUD):
    """付款 仓库（收款处理）。

    付款记录只追加不修改；发票的已付金额始终由付款记录汇总得出。
    """

    def __init__(self, conn: DatabaseConnection,
                 invoice_repo: InvoiceRepository) -> None:
        super().__init__(conn)
        self._invoices = invoice_repo

    def process_payment(self, invoice_id: str, amount: Any,
                        payment_method: Optional[str],
                        reference_number: Optional[str] = None,
                        notes: Optional[str] = None,
                        payment_date: Optional[datetime] = None,
                        expected_version: Optional[int] = None,
                        session: Optional[Session] = None) -> Payment:
        """登记一笔付款。

        Args:
            invoice_id: 发票ID。
            amount: 付款金额，> 0 且不超过剩余应付。
            payment_method: cash / card / transfer / ewallet。
            reference_number: 参考号（非现金付款通常需要）。
            notes: 备注（可选）。
            payment_date: 付款时间（可选，默认现在）。
            expected_version: 调用方看到的发票版本号（可选），
                与当前版本不一致时拒绝。
            session: 外部会话（可选）。

        Returns:
            新建的 Payment 对象。

        Raises:
            MissingPaymentMethod: 未指定付款方式。
            ValidationError: 付款方式无效、金额不为正、发票为草稿或工单未完成。
            InvoiceNotFound: 发票不存在。
            OverpaymentRejected: 金额超过剩余应付。
            ConcurrentModification: 读取余额后发票已被其他付款修改。
        """
        if not payment_method:
            raise MissingPaymentMethod("Payment method is required")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Invalid payment method: {payment_method}")
        amount = self._to_decimal(amount, "Amount")
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if isinstance(payment_date, date) and not isinstance(payment_date, datetime):
            payment_date = datetime.combine(payment_date, time())

        with self._transaction(session) as sess:
            invoice = sess.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFound(f"Invoice not found: {invoice_id}")
            if invoice.status == "draft":
                raise ValidationError(
                    f"Invoice {invoice.invoice_number} is still a draft"
                )
            if invoice.service.status != "completed":
                raise ValidationError(
                    f"Service {invoice.service_id} is not completed"
                )

            version = invoice.version
            if expected_version is not None and expected_version != version:
                raise ConcurrentModification(
                    f"Invoice {invoice.invoice_number} changed "
                    f"(version {version}, expected {expected_version})"
                )

            paid = self._invoices.get_paid_amount(invoice_id, session=sess)
            remaining = invoice.total_amount - paid
            if amount > remaining:
                logger.warning(
                    f"Rejected payment of {amount} on {invoice.invoice_number}: "
                    f"remaining {remaining}"
                )
                raise OverpaymentRejected(
                    f"Payment {amount} exceeds remaining {remaining} "
                    f"on invoice {invoice.invoice_number}"
                )
            if payment_method != "cash" and not reference_number:
                logger.warning(
                    f"{payment_method} payment on {invoice.invoice_number} "
                    f"has no reference number"
                )

            now = payment_date or datetime.now()
            payment_number = generate_number(
                sess, "PAY", Payment.payment_number, now
            )
            payment = Payment(
                invoice_id=invoice.id,
                payment_number=payment_number,
                amount=amount,
                payment_method=payment_method,
                reference_number=reference_number or None,
                notes=notes or None,
                status="completed",
                payment_date=now,
            )
            sess.add(payment)

            new_status = "paid" if paid + amount >= invoice.total_amount else "partial"
            result = sess.execute(
                update(Invoice)
                .where(Invoice.id == invoice.id)
                .where(Invoice.version == version)
                .values(version=version + 1, status=new_status,
                        updated_at=datetime.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentModification(
                    f"Invoice {invoice.invoice_number} was modified by "
                    f"another payment"
                )

            sess.add(FinancialTransaction(
                transaction_type="income",
                amount=amount,
                category=CATEGORY_PAYMENT_RECEIVED,
                description=(
                    f"Pembayaran {payment_number} - "
                    f"Invoice {invoice.invoice_number}"
                ),
                transaction_date=now,
            ))
            sess.flush()
            sess.refresh(invoice)

            logger.info(
                f"Payment {payment_number} of {amount} recorded on "
                f"{invoice.invoice_number}, invoice now {new_status}"
            )
            return payment

    def list_by_invoice(self, invoice_id: str,
                        session: Optional[Session] = None) -> List[Payment]:
        """获取发票的付款记录（最早的在前）。"""
        return self.get_all(
            Payment, filters={"invoice_id": invoice_id},
            order_by=Payment.payment_date.asc(), session=session
        )

