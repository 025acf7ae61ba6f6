"""SQLAlchemy ORM 模型定义。

本模块定义了修理厂后台的所有数据库表：
- 顾客、车辆等基础实体
- 服务工单、备件及备件使用记录
- 库存变动流水（只追加）
- 发票、发票明细、付款（只追加）
- 收支流水（系统生成的收入记录与手工录入的支出）

所有主键均为应用生成的 UUID 字符串，金额统一使用 DECIMAL(14,2)。
"""
import uuid
from typing import List, Optional
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Text, Date, DateTime,
    DECIMAL, ForeignKey
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, date

# SQLAlchemy declarative base，所有模型都继承自此类
Base = declarative_base()

# 允许使用旧式类型注解（兼容 SQLAlchemy 2.0）
Base.__allow_unmapped__ = True

MONEY = DECIMAL(14, 2)


def new_id() -> str:
    """生成新的记录ID（UUID字符串）。"""
    return str(uuid.uuid4())


class Customer(Base):
    """顾客表模型。

    Attributes:
        id: 主键，UUID字符串。
        name: 顾客姓名，必填。
        phone: 联系电话，必填。
        address: 地址，可选。
        email: 邮箱，可选。
        created_at: 创建时间。

    Relationships:
        vehicles: 该顾客名下的车辆。
        services: 该顾客的服务工单。
    """
    __tablename__ = "customers"

    id: str = Column(String(36), primary_key=True, default=new_id)
    name: str = Column(String(100), nullable=False)
    phone: str = Column(String(30), nullable=False)
    address: Optional[str] = Column(Text)
    email: Optional[str] = Column(String(100))
    created_at: datetime = Column(DateTime, default=datetime.now)

    # Relationships
    vehicles: List["Vehicle"] = relationship("Vehicle", back_populates="customer")
    services: List["Service"] = relationship("Service", back_populates="customer")


class Vehicle(Base):
    """车辆表模型。

    每辆车只属于一位顾客，车牌号唯一。

    Attributes:
        id: 主键，UUID字符串。
        customer_id: 车主ID，外键关联customers表。
        plate_number: 车牌号，唯一。
        brand: 品牌。
        model: 型号。
        year: 年份。
        last_service: 最近一次完成服务的日期，可选。
        created_at: 创建时间。
    """
    __tablename__ = "vehicles"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_id: str = Column(String(36), ForeignKey("customers.id"), nullable=False)
    plate_number: str = Column(String(20), nullable=False, unique=True)
    brand: str = Column(String(50), nullable=False)
    model: str = Column(String(50), nullable=False)
    year: int = Column(Integer, nullable=False)
    last_service: Optional[date] = Column(Date)
    created_at: datetime = Column(DateTime, default=datetime.now)

    # Relationships
    customer: "Customer" = relationship("Customer", back_populates="vehicles")
    services: List["Service"] = relationship("Service", back_populates="vehicle")


class Service(Base):
    """服务工单表模型。

    Attributes:
        id: 主键，UUID字符串。
        customer_id: 顾客ID。
        vehicle_id: 车辆ID。
        complaint: 故障描述。
        cost: 工时费（估价），开票时作为服务明细的单价。
        mechanic: 负责技师，可选。
        status: 状态，pending / in-progress / completed，默认pending。
        service_date: 服务日期。
        notes: 备注，可选。
    """
    __tablename__ = "services"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_id: str = Column(String(36), ForeignKey("customers.id"), nullable=False)
    vehicle_id: str = Column(String(36), ForeignKey("vehicles.id"), nullable=False)
    complaint: str = Column(Text, nullable=False)
    cost: Decimal = Column(MONEY, nullable=False, default=0)
    mechanic: Optional[str] = Column(String(100))
    status: str = Column(String(20), nullable=False, default="pending")  # pending / in-progress / completed
    service_date: date = Column(Date, nullable=False, default=date.today)
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.now)
    updated_at: datetime = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    customer: "Customer" = relationship("Customer", back_populates="services")
    vehicle: "Vehicle" = relationship("Vehicle", back_populates="services")
    parts: List["ServicePart"] = relationship("ServicePart", back_populates="service")
    invoice: Optional["Invoice"] = relationship("Invoice", back_populates="service", uselist=False)


class SparePart(Base):
    """备件表模型。

    stock 不允许为负；stock < min_stock 视为低库存。

    Attributes:
        id: 主键，UUID字符串。
        name: 备件名称。
        category: 备件类别。
        purchase_price: 进价，用于成本核算。
        sale_price: 售价，开票时的默认单价。
        stock: 当前库存，整数 >= 0。
        min_stock: 最低库存，整数 >= 0。
        supplier: 供应商，可选。
    """
    __tablename__ = "spare_parts"

    id: str = Column(String(36), primary_key=True, default=new_id)
    name: str = Column(String(100), nullable=False)
    category: str = Column(String(50), nullable=False)
    purchase_price: Decimal = Column(MONEY, nullable=False, default=0)
    sale_price: Decimal = Column(MONEY, nullable=False, default=0)
    stock: int = Column(Integer, nullable=False, default=0)
    min_stock: int = Column(Integer, nullable=False, default=0)
    supplier: Optional[str] = Column(String(100))
    created_at: datetime = Column(DateTime, default=datetime.now)
    updated_at: datetime = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    movements: List["StockMovement"] = relationship("StockMovement", back_populates="spare_part")

    @property
    def price(self) -> Decimal:
        """售价的旧字段名。"""
        return self.sale_price

    @property
    def is_low_stock(self) -> bool:
        return self.stock < self.min_stock


class StockMovement(Base):
    """库存变动流水表模型（只追加，不修改不删除）。

    Attributes:
        id: 主键，UUID字符串。
        spare_part_id: 备件ID。
        movement_type: 变动方向，in / out。
        quantity: 变动数量（绝对值，> 0）。
        notes: 备注，可选。
        created_at: 创建时间。
    """
    __tablename__ = "stock_movements"

    id: str = Column(String(36), primary_key=True, default=new_id)
    spare_part_id: str = Column(String(36), ForeignKey("spare_parts.id"), nullable=False)
    movement_type: str = Column(String(10), nullable=False)  # in / out
    quantity: int = Column(Integer, nullable=False)
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.now)

    # Relationships
    spare_part: "SparePart" = relationship("SparePart", back_populates="movements")


class ServicePart(Base):
    """服务使用备件表模型（创建后不可修改）。

    unit_price 是使用时的售价；unit_cost 是使用时的进价快照，
    旧数据可能为空，此时按备件当前进价计算成本。
    """
    __tablename__ = "service_parts"

    id: str = Column(String(36), primary_key=True, default=new_id)
    service_id: str = Column(String(36), ForeignKey("services.id"), nullable=False)
    spare_part_id: str = Column(String(36), ForeignKey("spare_parts.id"), nullable=False)
    quantity: int = Column(Integer, nullable=False)
    unit_price: Decimal = Column(MONEY, nullable=False)
    unit_cost: Optional[Decimal] = Column(MONEY)
    created_at: datetime = Column(DateTime, default=datetime.now)

    # Relationships
    service: "Service" = relationship("Service", back_populates="parts")
    spare_part: "SparePart" = relationship("SparePart")


class Invoice(Base):
    """发票表模型。

    每个已完成的服务最多一张发票（service_id 唯一）。
    total_amount = subtotal + tax_amount - discount_amount，创建后不再重算。
    已付金额不落库，始终由付款记录汇总得出；status 只是派生结果的回写。

    Attributes:
        id: 主键，UUID字符串。
        invoice_number: 发票号，唯一，格式 INV-YYYYMMDD-NNNN。
        service_id: 服务ID，唯一。
        customer_id: 顾客ID。
        vehicle_id: 车辆ID。
        subtotal: 明细合计。
        tax_amount: 税额。
        discount_amount: 折扣金额。
        total_amount: 应付总额。
        status: draft / issued / partial / paid。
        issue_date: 开票日期。
        due_date: 到期日期。
        notes: 备注，可选。
        version: 乐观锁版本号，每次付款加一。
    """
    __tablename__ = "invoices"

    id: str = Column(String(36), primary_key=True, default=new_id)
    invoice_number: str = Column(String(30), nullable=False, unique=True)
    service_id: str = Column(String(36), ForeignKey("services.id"), nullable=False, unique=True)
    customer_id: str = Column(String(36), ForeignKey("customers.id"), nullable=False)
    vehicle_id: str = Column(String(36), ForeignKey("vehicles.id"), nullable=False)
    subtotal: Decimal = Column(MONEY, nullable=False)
    tax_amount: Decimal = Column(MONEY, nullable=False, default=0)
    discount_amount: Decimal = Column(MONEY, nullable=False, default=0)
    total_amount: Decimal = Column(MONEY, nullable=False)
    status: str = Column(String(20), nullable=False, default="draft")  # draft / issued / partial / paid
    issue_date: date = Column(Date, nullable=False, default=date.today)
    due_date: date = Column(Date, nullable=False)
    notes: Optional[str] = Column(Text)
    version: int = Column(Integer, nullable=False, default=0)
    created_at: datetime = Column(DateTime, default=datetime.now)
    updated_at: datetime = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    service: "Service" = relationship("Service", back_populates="invoice")
    customer: "Customer" = relationship("Customer")
    vehicle: "Vehicle" = relationship("Vehicle")
    items: List["InvoiceItem"] = relationship("InvoiceItem", back_populates="invoice")
    payments: List["Payment"] = relationship("Payment", back_populates="invoice")


class InvoiceItem(Base):
    """发票明细表模型。

    每张发票恰好一条 service 明细（工时），零或多条 sparepart 明细。
    total_price = quantity * unit_price。
    """
    __tablename__ = "invoice_items"

    id: str = Column(String(36), primary_key=True, default=new_id)
    invoice_id: str = Column(String(36), ForeignKey("invoices.id"), nullable=False)
    item_type: str = Column(String(20), nullable=False)  # service / sparepart
    item_id: Optional[str] = Column(String(36))
    description: str = Column(Text, nullable=False)
    quantity: int = Column(Integer, nullable=False)
    unit_price: Decimal = Column(MONEY, nullable=False)
    total_price: Decimal = Column(MONEY, nullable=False)
    created_at: datetime = Column(DateTime, default=datetime.now)

    # Relationships
    invoice: "Invoice" = relationship("Invoice", back_populates="items")


class Payment(Base):
    """付款记录表模型（只追加）。

    Attributes:
        id: 主键，UUID字符串。
        invoice_id: 发票ID。
        payment_number: 付款单号，唯一，格式 PAY-YYYYMMDD-NNNN。
        amount: 付款金额，> 0。
        payment_method: cash / card / transfer / ewallet。
        reference_number: 参考号，非现金付款时通常需要。
        notes: 备注，可选。
        status: 目前只持久化成功的付款（completed）。
        payment_date: 付款时间。
    """
    __tablename__ = "payments"

    id: str = Column(String(36), primary_key=True, default=new_id)
    invoice_id: str = Column(String(36), ForeignKey("invoices.id"), nullable=False)
    payment_number: str = Column(String(30), nullable=False, unique=True)
    amount: Decimal = Column(MONEY, nullable=False)
    payment_method: str = Column(String(20), nullable=False)
    reference_number: Optional[str] = Column(String(100))
    notes: Optional[str] = Column(Text)
    status: str = Column(String(20), nullable=False, default="completed")
    payment_date: datetime = Column(DateTime, nullable=False, default=datetime.now)
    created_at: datetime = Column(DateTime, default=datetime.now)

    # Relationships
    invoice: "Invoice" = relationship("Invoice", back_populates="payments")


class FinancialTransaction(Base):
    """收支流水表模型。

    用于：(a) 开票、收款时系统生成的收入记录（仅供查阅，报表不计入）；
    (b) 手工录入的经营支出和其他支出。
    """
    __tablename__ = "financial_transactions"

    id: str = Column(String(36), primary_key=True, default=new_id)
    transaction_type: str = Column(String(10), nullable=False)  # income / expense
    amount: Decimal = Column(MONEY, nullable=False)
    category: Optional[str] = Column(String(100))
    description: Optional[str] = Column(Text)
    transaction_date: datetime = Column(DateTime, nullable=False, default=datetime.now)
    service_id: Optional[str] = Column(String(36), ForeignKey("services.id"))
    created_at: datetime = Column(DateTime, default=datetime.now)
