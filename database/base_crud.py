"""通用 CRUD 基类。

所有仓库继承 BaseCRUD，获得：
- 会话获取与事务管理（提交 / 回滚 / 错误转换）
- 按ID查询、条件查询、创建、更新、删除等通用操作

所有方法都接受可选的外部 session：传入时由调用方控制提交，
多个仓库操作因此可以组合在同一个事务中。
"""
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, List, Dict, Any, Callable, Iterator, Type, TypeVar
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from loguru import logger

from .connection import DatabaseConnection
from .errors import ConflictError, StoreError, ValidationError

ModelT = TypeVar("ModelT")

CENT = Decimal("0.01")


class BaseCRUD:
    """通用 CRUD 基类。

    Attributes:
        conn: 数据库连接管理器。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        return self.conn.get_session()

    @contextmanager
    def _transaction(self, session: Optional[Session] = None
                     ) -> Iterator[Session]:
        """事务上下文。

        未传入 session 时创建新会话，正常结束提交，异常回滚并关闭。
        传入 session 时只做错误转换，提交由外层负责。

        Raises:
            ConflictError: 违反唯一约束等完整性约束。
            StoreError: 其他数据库错误。
        """
        owns = session is None
        sess = self._get_session() if owns else session
        try:
            yield sess
            if owns:
                sess.commit()
        except IntegrityError as exc:
            if owns:
                sess.rollback()
            logger.warning(f"Integrity violation: {exc.orig}")
            raise ConflictError(f"Integrity violation: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            if owns:
                sess.rollback()
            logger.error(f"Database operation failed: {exc}")
            raise StoreError(f"Database operation failed: {exc}") from exc
        except Exception:
            if owns:
                sess.rollback()
            raise
        finally:
            if owns:
                sess.close()

    def _read(self, query_func: Callable[[Session], Any],
              session: Optional[Session] = None) -> Any:
        """在外部会话或新会话中执行只读查询。"""
        if session is not None:
            return query_func(session)
        with self._transaction() as sess:
            return query_func(sess)

    def get_by_id(self, model: Type[ModelT], record_id: str,
                  session: Optional[Session] = None) -> Optional[ModelT]:
        """按主键查询记录，不存在返回 None。"""
        return self._read(lambda sess: sess.get(model, record_id), session)

    def get_all(self, model: Type[ModelT],
                filters: Optional[Dict[str, Any]] = None,
                order_by: Optional[Any] = None,
                session: Optional[Session] = None) -> List[ModelT]:
        """按等值条件查询记录列表。

        Args:
            model: ORM 模型类。
            filters: 字段名到值的等值过滤条件（可选）。
            order_by: 排序表达式，如 ``Model.name.asc()``（可选）。
            session: 外部会话（可选）。

        Returns:
            记录列表。
        """
        def _query(sess):
            query = sess.query(model)
            for field, value in (filters or {}).items():
                query = query.filter(getattr(model, field) == value)
            if order_by is not None:
                query = query.order_by(order_by)
            return query.all()

        return self._read(_query, session)

    def create(self, model: Type[ModelT], /,
               session: Optional[Session] = None, **fields) -> ModelT:
        """创建记录并返回（已分配ID）。"""
        with self._transaction(session) as sess:
            record = model(**fields)
            sess.add(record)
            sess.flush()
            return record

    def update_by_id(self, model: Type[ModelT], record_id: str, /,
                     session: Optional[Session] = None,
                     **fields) -> Optional[ModelT]:
        """按主键更新字段，记录不存在返回 None。"""
        with self._transaction(session) as sess:
            record = sess.get(model, record_id)
            if record is None:
                return None
            for key, value in fields.items():
                setattr(record, key, value)
            sess.flush()
            return record

    def delete_by_id(self, model: Type[ModelT], record_id: str,
                     session: Optional[Session] = None) -> bool:
        """按主键删除记录，返回是否删除成功。"""
        with self._transaction(session) as sess:
            record = sess.get(model, record_id)
            if record is None:
                return False
            sess.delete(record)
            return True

    @staticmethod
    def _to_decimal(value: Any, field_name: str = "Amount",
                    places: Optional[Decimal] = CENT) -> Decimal:
        """把金额转换为 Decimal（默认保留两位小数，四舍五入）。

        places 为 None 时保留原始精度，用于税率等比例值。

        Raises:
            ValidationError: 金额缺失或格式无效。
        """
        if value is None or isinstance(value, bool):
            raise ValidationError(f"{field_name} is required")
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"Invalid {field_name.lower()}: {value!r}")
        if not amount.is_finite():
            raise ValidationError(f"Invalid {field_name.lower()}: {value!r}")
        if places is None:
            return amount
        return amount.quantize(places, rounding=ROUND_HALF_UP)

    @staticmethod
    def _to_int(value: Any, field_name: str = "Quantity") -> int:
        """把整数字段（库存、年份等）转换为 int。

        接受 int 和纯数字字符串；小数、布尔值等一律拒绝，不做截断。

        Raises:
            ValidationError: 缺失或不是整数。
        """
        if isinstance(value, bool):
            raise ValidationError(f"{field_name} must be an integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise ValidationError(f"{field_name} must be an integer, got {value!r}")

    @staticmethod
    def _parse_date(date_value: Any, field_name: str = "Date") -> date:
        """解析日期值。

        Args:
            date_value: 日期值（``YYYY-MM-DD`` 字符串、date 或 datetime）。
            field_name: 字段名称（用于错误提示）。

        Raises:
            ValidationError: 格式无效或缺失。
        """
        if isinstance(date_value, datetime):
            return date_value.date()
        if isinstance(date_value, date):
            return date_value
        if isinstance(date_value, str):
            try:
                return datetime.strptime(date_value, "%Y-%m-%d").date()
            except ValueError:
                raise ValidationError(
                    f"Invalid date format: {date_value}, "
                    f"expected YYYY-MM-DD"
                )
        raise ValidationError(f"{field_name} is required")
