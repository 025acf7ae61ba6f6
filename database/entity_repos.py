"""实体仓库 —— 基础实体的数据访问层。

管理修理厂的基础实体（顾客、车辆、服务工单）。
每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法。
"""
from decimal import Decimal
from typing import Optional, List, Dict, Any
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload
from loguru import logger

from config.business_config import SERVICE_STATUSES
from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .errors import ConflictError, MissingService, NotFoundError, ValidationError
from .models import Customer, Vehicle, Service, Invoice

CUSTOMER_FIELDS = ("name", "phone", "address", "email")

# 已开票工单的这些字段由发票锁定
INVOICED_LOCKED_FIELDS = ("customer_id", "vehicle_id", "cost")
SERVICE_FIELDS = (
    "customer_id", "vehicle_id", "complaint", "cost", "mechanic",
    "status", "service_date", "notes",
)


def billing_status(has_invoice: bool, total: Decimal, paid: Decimal) -> str:
    """服务的收款状态：unbilled / unpaid / partial / paid。"""
    if not has_invoice:
        return "unbilled"
    if total - paid <= 0:
        return "paid"
    if paid > 0:
        return "partial"
    return "unpaid"


class CustomerRepository(BaseCRUD):
    """顾客 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Customer:
        """创建顾客。

        Args:
            data: 顾客数据字典，支持以下键：
                - name: 姓名（必填）
                - phone: 电话（必填）
                - address: 地址（可选）
                - email: 邮箱（可选）

        Raises:
            ValidationError: 姓名或电话缺失。
        """
        if not data.get("name") or not data.get("phone"):
            raise ValidationError("Customer name and phone are required")
        return super().create(
            Customer, session=session,
            name=data["name"],
            phone=data["phone"],
            address=data.get("address"),
            email=data.get("email"),
        )

    def search(self, keyword: str,
               session: Optional[Session] = None) -> List[Customer]:
        """按姓名或电话搜索顾客（按姓名排序）。"""
        def _query(sess):
            return sess.query(Customer).filter(
                or_(
                    Customer.name.contains(keyword),
                    Customer.phone.contains(keyword)
                )
            ).order_by(Customer.name.asc()).all()

        return self._read(_query, session)

    def get_with_vehicles(self, customer_id: str,
                          session: Optional[Session] = None
                          ) -> Optional[Dict[str, Any]]:
        """获取顾客信息及名下车辆，不存在返回 None。"""
        def _query(sess):
            customer = sess.get(Customer, customer_id)
            if customer is None:
                return None
            return {
                "id": customer.id,
                "name": customer.name,
                "phone": customer.phone,
                "address": customer.address,
                "email": customer.email,
                "vehicles": [
                    {
                        "id": v.id,
                        "plate_number": v.plate_number,
                        "brand": v.brand,
                        "model": v.model,
                        "year": v.year,
                        "last_service": v.last_service,
                    }
                    for v in sorted(customer.vehicles,
                                    key=lambda v: v.plate_number)
                ],
            }

        return self._read(_query, session)

    def update(self, customer_id: str, session: Optional[Session] = None,
               **fields) -> Customer:
        """修改顾客信息（name / phone / address / email）。

        Raises:
            ValidationError: 字段不可修改，或姓名、电话被清空。
            NotFoundError: 顾客不存在。
        """
        invalid = [key for key in fields if key not in CUSTOMER_FIELDS]
        if invalid:
            raise ValidationError(
                f"Unknown customer fields: {', '.join(invalid)}"
            )
        for key in ("name", "phone"):
            if key in fields and not fields[key]:
                raise ValidationError(f"Customer {key} must not be empty")
        customer = self.update_by_id(Customer, customer_id, session=session,
                                     **fields)
        if customer is None:
            raise NotFoundError(f"Customer not found: {customer_id}")
        return customer

    def delete(self, customer_id: str,
               session: Optional[Session] = None) -> bool:
        """删除顾客及其名下车辆，顾客不存在返回 False。

        Raises:
            ConflictError: 顾客已有服务工单。
        """
        with self._transaction(session) as sess:
            customer = sess.get(Customer, customer_id)
            if customer is None:
                return False
            if customer.services:
                raise ConflictError(
                    f"Customer {customer.name} has {len(customer.services)} "
                    f"service(s) and cannot be deleted"
                )
            for vehicle in list(customer.vehicles):
                sess.delete(vehicle)
            sess.delete(customer)
            logger.info(f"Customer {customer_id} deleted")
            return True

    def get_service_history(self, customer_id: str,
                            session: Optional[Session] = None
                            ) -> List[Dict[str, Any]]:
        """顾客的服务历史（最近的在前）。"""
        def _query(sess):
            services = sess.query(Service).options(
                joinedload(Service.vehicle)
            ).filter(
                Service.customer_id == customer_id
            ).order_by(
                Service.service_date.desc(), Service.created_at.desc()
            ).all()
            return [
                {
                    "id": s.id,
                    "service_date": s.service_date,
                    "complaint": s.complaint,
                    "cost": float(s.cost),
                    "status": s.status,
                    "mechanic": s.mechanic,
                    "plate_number": s.vehicle.plate_number,
                    "vehicle_brand": s.vehicle.brand,
                    "vehicle_model": s.vehicle.model,
                }
                for s in services
            ]

        return self._read(_query, session)


class VehicleRepository(BaseCRUD):
    """车辆 仓库。车牌号唯一。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Vehicle:
        """登记车辆。

        Args:
            data: 车辆数据字典，支持以下键：
                - customer_id: 车主ID（必填）
                - plate_number: 车牌号（必填，唯一）
                - brand / model / year: 品牌、型号、年份（必填）

        Raises:
            ValidationError: 必填字段缺失。
            NotFoundError: 车主不存在。
            ConflictError: 车牌号已存在。
        """
        required = ("customer_id", "plate_number", "brand", "model", "year")
        missing = [key for key in required if not data.get(key)]
        if missing:
            raise ValidationError(f"Missing vehicle fields: {', '.join(missing)}")

        plate = data["plate_number"].strip().upper()
        with self._transaction(session) as sess:
            if sess.get(Customer, data["customer_id"]) is None:
                raise NotFoundError(f"Customer not found: {data['customer_id']}")
            if sess.query(Vehicle).filter(Vehicle.plate_number == plate).first():
                raise ConflictError(f"Plate number already registered: {plate}")
            vehicle = Vehicle(
                customer_id=data["customer_id"],
                plate_number=plate,
                brand=data["brand"],
                model=data["model"],
                year=self._to_int(data["year"], "Year"),
            )
            sess.add(vehicle)
            sess.flush()
            return vehicle

    def get_by_plate(self, plate_number: str,
                     session: Optional[Session] = None) -> Optional[Vehicle]:
        plate = plate_number.strip().upper()
        return self._read(
            lambda sess: sess.query(Vehicle).filter(
                Vehicle.plate_number == plate
            ).first(),
            session
        )

    def list_by_customer(self, customer_id: str,
                         session: Optional[Session] = None) -> List[Vehicle]:
        return self.get_all(
            Vehicle, filters={"customer_id": customer_id},
            order_by=Vehicle.plate_number.asc(), session=session
        )


class ServiceRepository(BaseCRUD):
    """服务工单 仓库。

    状态可以在 pending / in-progress / completed 之间任意切换，
    但只有 completed 的工单才能开票和收款。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Service:
        """创建服务工单（初始状态 pending）。

        Args:
            data: 工单数据字典，支持以下键：
                - customer_id: 顾客ID（必填）
                - vehicle_id: 车辆ID（必填，须属于该顾客）
                - complaint: 故障描述（必填）
                - cost: 工时费估价（必填）
                - mechanic: 技师（可选）
                - service_date: 服务日期（可选，默认今天）
                - notes: 备注（可选）

        Raises:
            ValidationError: 必填字段缺失、金额为负或车辆不属于该顾客。
            NotFoundError: 车辆不存在。
        """
        if not data.get("customer_id") or not data.get("vehicle_id"):
            raise ValidationError("Service requires customer_id and vehicle_id")
        if not data.get("complaint"):
            raise ValidationError("Service complaint is required")
        cost = self._to_decimal(data.get("cost"), "Cost")
        if cost < 0:
            raise ValidationError("Service cost must not be negative")
        service_date = (
            self._parse_date(data["service_date"], "Service date")
            if data.get("service_date") else None
        )

        with self._transaction(session) as sess:
            vehicle = sess.get(Vehicle, data["vehicle_id"])
            if vehicle is None:
                raise NotFoundError(f"Vehicle not found: {data['vehicle_id']}")
            if vehicle.customer_id != data["customer_id"]:
                raise ValidationError(
                    f"Vehicle {vehicle.plate_number} does not belong to "
                    f"customer {data['customer_id']}"
                )
            service = Service(
                customer_id=data["customer_id"],
                vehicle_id=vehicle.id,
                complaint=data["complaint"],
                cost=cost,
                mechanic=data.get("mechanic"),
                status="pending",
                notes=data.get("notes"),
            )
            if service_date is not None:
                service.service_date = service_date
            sess.add(service)
            sess.flush()
            return service

    def update_status(self, service_id: str, status: str,
                      session: Optional[Session] = None) -> Service:
        """更新工单状态。

        完成工单时同时更新车辆的最近服务日期。

        Raises:
            ValidationError: 状态值无效。
            MissingService: 工单不存在。
        """
        if status not in SERVICE_STATUSES:
            raise ValidationError(f"Invalid service status: {status}")

        with self._transaction(session) as sess:
            service = sess.get(Service, service_id)
            if service is None:
                raise MissingService(f"Service not found: {service_id}")
            service.status = status
            if status == "completed":
                service.vehicle.last_service = service.service_date
            sess.flush()
            logger.info(f"Service {service_id} status -> {status}")
            return service

    def update(self, service_id: str, session: Optional[Session] = None,
               **fields) -> Service:
        """修改工单。

        可修改 customer_id、vehicle_id、complaint、cost、mechanic、status、
        service_date、notes。已开票的工单不能再改顾客、车辆和工时费。

        Raises:
            ValidationError: 字段无效、金额为负或车辆不属于该顾客。
            ConflictError: 工单已开票却修改了被发票锁定的字段。
            MissingService: 工单不存在。
        """
        invalid = [key for key in fields if key not in SERVICE_FIELDS]
        if invalid:
            raise ValidationError(f"Unknown service fields: {', '.join(invalid)}")
        if "complaint" in fields and not fields["complaint"]:
            raise ValidationError("Service complaint is required")
        if "status" in fields and fields["status"] not in SERVICE_STATUSES:
            raise ValidationError(f"Invalid service status: {fields['status']}")
        if "cost" in fields:
            fields["cost"] = self._to_decimal(fields["cost"], "Cost")
            if fields["cost"] < 0:
                raise ValidationError("Service cost must not be negative")
        if "service_date" in fields:
            fields["service_date"] = self._parse_date(
                fields["service_date"], "Service date"
            )

        with self._transaction(session) as sess:
            service = sess.get(Service, service_id)
            if service is None:
                raise MissingService(f"Service not found: {service_id}")
            if service.invoice is not None:
                locked = [
                    key for key in INVOICED_LOCKED_FIELDS
                    if key in fields and fields[key] != getattr(service, key)
                ]
                if locked:
                    raise ConflictError(
                        f"Service {service_id} is invoiced; "
                        f"cannot change {', '.join(locked)}"
                    )

            customer_id = fields.get("customer_id", service.customer_id)
            vehicle_id = fields.get("vehicle_id", service.vehicle_id)
            if "customer_id" in fields or "vehicle_id" in fields:
                vehicle = sess.get(Vehicle, vehicle_id)
                if vehicle is None:
                    raise NotFoundError(f"Vehicle not found: {vehicle_id}")
                if vehicle.customer_id != customer_id:
                    raise ValidationError(
                        f"Vehicle {vehicle.plate_number} does not belong to "
                        f"customer {customer_id}"
                    )

            for key, value in fields.items():
                setattr(service, key, value)
            if fields.get("status") == "completed":
                sess.get(Vehicle, vehicle_id).last_service = service.service_date
            sess.flush()
            logger.info(f"Service {service_id} updated: {', '.join(fields)}")
            return service

    def delete(self, service_id: str,
               session: Optional[Session] = None) -> bool:
        """删除工单，工单不存在返回 False。

        Raises:
            ConflictError: 工单已开票。
        """
        with self._transaction(session) as sess:
            service = sess.get(Service, service_id)
            if service is None:
                return False
            if service.invoice is not None:
                raise ConflictError(
                    f"Service {service_id} has invoice "
                    f"{service.invoice.invoice_number} and cannot be deleted"
                )
            sess.delete(service)
            logger.info(f"Service {service_id} deleted")
            return True

    def list_with_billing(self, session: Optional[Session] = None
                          ) -> List[Dict[str, Any]]:
        """列出所有工单及其开票、收款情况（最新的在前）。"""
        def _query(sess):
            services = sess.query(Service).options(
                joinedload(Service.customer),
                joinedload(Service.vehicle),
                joinedload(Service.invoice).joinedload(Invoice.payments),
            ).order_by(Service.created_at.desc()).all()

            rows = []
            for s in services:
                invoice = s.invoice
                total = invoice.total_amount if invoice else Decimal("0")
                paid = sum(
                    (p.amount for p in invoice.payments
                     if p.status == "completed"),
                    Decimal("0")
                ) if invoice else Decimal("0")
                rows.append({
                    "id": s.id,
                    "customer_name": s.customer.name if s.customer else "",
                    "vehicle_brand": s.vehicle.brand if s.vehicle else "",
                    "vehicle_model": s.vehicle.model if s.vehicle else "",
                    "plate_number": s.vehicle.plate_number if s.vehicle else "",
                    "complaint": s.complaint,
                    "cost": float(s.cost),
                    "status": s.status,
                    "service_date": s.service_date,
                    "has_invoice": invoice is not None,
                    "invoice_status": invoice.status if invoice else None,
                    "invoice_total": float(total),
                    "paid_amount": float(paid),
                    "billing_status": billing_status(
                        invoice is not None, total, paid
                    ),
                })
            return rows

        return self._read(_query, session)
