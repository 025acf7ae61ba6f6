"""库存仓库 —— 备件目录与库存流水。

库存调整使用条件更新（``stock + delta >= 0``）保证库存永不为负，
并与库存流水写入放在同一个事务中提交。
"""
from typing import Optional, List, Dict, Any
from sqlalchemy import update
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .errors import InvalidStockOperation, SparePartNotFound, ValidationError
from .models import SparePart, StockMovement

MOVEMENT_TYPES = ("in", "out")

# 可通过 update() 修改的字段；库存只能通过 adjust_stock 变动
EDITABLE_FIELDS = (
    "name", "category", "purchase_price", "sale_price", "min_stock", "supplier"
)


class SparePartRepository(BaseCRUD):
    """备件 仓库（库存台账）。

    管理备件信息和库存：
    - 备件的新增、修改、删除
    - 入库 / 出库调整，自动记录库存流水
    - 低库存查询与库存对账
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> SparePart:
        """新增备件。

        初始库存大于0时记录一条 in 流水，使流水合计与库存一致。

        Args:
            data: 备件数据字典，支持以下键：
                - name: 名称（必填）
                - category: 类别（必填）
                - purchase_price: 进价（必填）
                - sale_price: 售价（必填，兼容旧字段 price）
                - stock: 初始库存（可选，默认0）
                - min_stock: 最低库存（可选，默认0）
                - supplier: 供应商（可选）

        Raises:
            ValidationError: 字段缺失或为负。
        """
        if not data.get("name") or not data.get("category"):
            raise ValidationError("Spare part name and category are required")
        purchase_price = self._to_decimal(data.get("purchase_price"), "Purchase price")
        sale_price = self._to_decimal(
            data.get("sale_price", data.get("price")), "Sale price"
        )
        stock = self._to_int(data.get("stock") or 0, "Stock")
        min_stock = self._to_int(data.get("min_stock") or 0, "Minimum stock")
        if min(purchase_price, sale_price) < 0 or stock < 0 or min_stock < 0:
            raise ValidationError("Prices and stock levels must not be negative")

        with self._transaction(session) as sess:
            part = SparePart(
                name=data["name"],
                category=data["category"],
                purchase_price=purchase_price,
                sale_price=sale_price,
                stock=stock,
                min_stock=min_stock,
                supplier=data.get("supplier"),
            )
            sess.add(part)
            sess.flush()
            if stock > 0:
                sess.add(StockMovement(
                    spare_part_id=part.id, movement_type="in",
                    quantity=stock, notes="Stok awal"
                ))
                sess.flush()
            return part

    def update(self, part_id: str, session: Optional[Session] = None,
               **fields) -> SparePart:
        """修改备件信息（不含库存）。

        Raises:
            ValidationError: 包含不可修改的字段（如 stock），名称为空，
                或价格、最低库存为负。
            SparePartNotFound: 备件不存在。
        """
        invalid = [key for key in fields if key not in EDITABLE_FIELDS]
        if invalid:
            raise ValidationError(
                f"Fields cannot be edited directly: {', '.join(invalid)}"
            )
        for key in ("name", "category"):
            if key in fields and not fields[key]:
                raise ValidationError(f"Spare part {key} must not be empty")
        for key in ("purchase_price", "sale_price"):
            if key in fields:
                fields[key] = self._to_decimal(fields[key], key)
                if fields[key] < 0:
                    raise ValidationError(f"{key} must not be negative")
        if "min_stock" in fields:
            fields["min_stock"] = self._to_int(fields["min_stock"], "Minimum stock")
            if fields["min_stock"] < 0:
                raise ValidationError("Minimum stock must not be negative")
        part = self.update_by_id(SparePart, part_id, session=session, **fields)
        if part is None:
            raise SparePartNotFound(f"Spare part not found: {part_id}")
        return part

    def delete(self, part_id: str, session: Optional[Session] = None) -> bool:
        return self.delete_by_id(SparePart, part_id, session=session)

    def adjust_stock(self, spare_part_id: str, delta: int,
                     movement_type: str, notes: Optional[str] = None,
                     session: Optional[Session] = None) -> SparePart:
        """调整备件库存并记录流水。

        Args:
            spare_part_id: 备件ID。
            delta: 变动数量，入库为正，出库为负。
            movement_type: in / out，须与 delta 符号一致。
            notes: 备注（可选）。
            session: 外部会话（可选），传入时由调用方提交。

        Returns:
            更新后的 SparePart 对象。

        Raises:
            ValidationError: movement_type 无效、delta 为0或符号不一致。
            SparePartNotFound: 备件不存在。
            InvalidStockOperation: 调整后库存为负，库存保持不变。
        """
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Invalid movement type: {movement_type}")
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValidationError("Stock delta must be a non-zero integer")
        if (delta > 0) != (movement_type == "in"):
            raise ValidationError(
                f"Delta {delta} does not match movement type '{movement_type}'"
            )

        with self._transaction(session) as sess:
            part = sess.get(SparePart, spare_part_id)
            if part is None:
                raise SparePartNotFound(f"Spare part not found: {spare_part_id}")

            result = sess.execute(
                update(SparePart)
                .where(SparePart.id == spare_part_id)
                .where(SparePart.stock + delta >= 0)
                .values(stock=SparePart.stock + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                sess.refresh(part)
                logger.warning(
                    f"Rejected stock adjustment for {part.name}: "
                    f"stock {part.stock}, delta {delta}"
                )
                raise InvalidStockOperation(
                    f"Insufficient stock for {part.name}: "
                    f"available {part.stock}, requested {abs(delta)}"
                )

            sess.add(StockMovement(
                spare_part_id=spare_part_id,
                movement_type=movement_type,
                quantity=abs(delta),
                notes=notes,
            ))
            sess.flush()
            sess.refresh(part)
            logger.info(
                f"Stock {movement_type} {abs(delta)} x {part.name}, "
                f"now {part.stock}"
            )
            return part

    def list_low_stock(self, session: Optional[Session] = None
                       ) -> List[SparePart]:
        """获取低库存备件（stock < min_stock），按名称排序。"""
        def _query(sess):
            return sess.query(SparePart).filter(
                SparePart.stock < SparePart.min_stock
            ).order_by(SparePart.name.asc(), SparePart.id.asc()).all()

        return self._read(_query, session)

    def get_movements(self, spare_part_id: str,
                      session: Optional[Session] = None
                      ) -> List[StockMovement]:
        """获取备件的库存流水（最早的在前）。"""
        return self.get_all(
            StockMovement, filters={"spare_part_id": spare_part_id},
            order_by=StockMovement.created_at.asc(), session=session
        )

    def reconcile(self, spare_part_id: str,
                  session: Optional[Session] = None) -> Dict[str, int]:
        """对账：比较当前库存与流水合计（入库 - 出库）。

        Returns:
            包含 stock、movement_balance、difference 的字典。

        Raises:
            SparePartNotFound: 备件不存在。
        """
        def _query(sess):
            part = sess.get(SparePart, spare_part_id)
            if part is None:
                raise SparePartNotFound(f"Spare part not found: {spare_part_id}")
            balance = 0
            for movement in part.movements:
                if movement.movement_type == "in":
                    balance += movement.quantity
                else:
                    balance -= movement.quantity
            return {
                "stock": part.stock,
                "movement_balance": balance,
                "difference": part.stock - balance,
            }

        return self._read(_query, session)
