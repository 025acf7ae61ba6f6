"""领域错误类型。

所有公开操作要么返回结果，要么抛出以下类型之一：

- ValidationError：输入缺失或不合法，未发生任何写入。
- ConflictError：与现有数据冲突（重复开票、超额付款、库存为负、并发修改）。
- NotFoundError：引用的服务/发票/备件不存在。
- StoreError：数据库访问失败，原始异常保存在 ``__cause__``。
"""


class WorkshopError(Exception):
    """所有领域错误的基类。"""


class ValidationError(WorkshopError):
    """输入校验失败。"""


class EmptyItemList(ValidationError):
    """发票明细为空。"""


class MissingPaymentMethod(ValidationError):
    """未指定付款方式。"""


class ConflictError(WorkshopError):
    """操作与现有数据冲突。"""


class DuplicateInvoice(ConflictError):
    """该服务已开具发票。"""


class OverpaymentRejected(ConflictError):
    """付款金额超过剩余应付金额。"""


class InvalidStockOperation(ConflictError):
    """库存调整会导致库存为负。"""


class ConcurrentModification(ConflictError):
    """读取后数据已被其他操作修改。"""


class NotFoundError(WorkshopError):
    """引用的记录不存在。"""


class MissingService(NotFoundError):
    """服务记录不存在。"""


class InvoiceNotFound(NotFoundError):
    """发票不存在。"""


class SparePartNotFound(NotFoundError):
    """备件不存在。"""


class StoreError(WorkshopError):
    """数据库不可用或写入失败。"""
