"""
业务配置接口 - 支持可替换的业务配置

固定的业务词汇（支出分类、付款方式、报表标签）与可替换的门店配置分开：
支出分类是封闭的枚举，不允许运行时修改；门店配置（种子数据、标签）可以替换。
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple


class ExpenseGroup(Enum):
    """手工支出分类（两组，每组携带允许的子分类）。"""

    OPERATIONAL = ("operational", (
        "Gaji Mekanik",
        "Listrik",
        "Air",
        "Internet",
        "Sewa Tempat",
        "Biaya Operasional Lainnya",
    ))
    OTHER = ("other", (
        "Pembelian Peralatan",
        "Perawatan Peralatan",
        "Transportasi",
        "Pemasaran",
        "Pajak & Perizinan",
        "Pengeluaran Lain-lain",
    ))

    def __init__(self, key: str, subcategories: Tuple[str, ...]) -> None:
        self.key = key
        self.subcategories = subcategories

    @classmethod
    def of(cls, category: Optional[str]) -> Optional["ExpenseGroup"]:
        """返回分类所属的组，未知分类返回 None。"""
        for group in cls:
            if category in group.subcategories:
                return group
        return None

    @classmethod
    def all_categories(cls) -> List[str]:
        return [c for group in cls for c in group.subcategories]


UNCATEGORIZED = "Tidak Dikategorikan"

PAYMENT_METHODS = ("cash", "card", "transfer", "ewallet")

SERVICE_STATUSES = ("pending", "in-progress", "completed")

INVOICE_STATUSES = ("draft", "issued", "partial", "paid")

# 系统生成的收入流水分类
CATEGORY_SERVICE_PAYMENT = "service_payment"
CATEGORY_PAYMENT_RECEIVED = "payment_received"


class BusinessConfig(ABC):
    """门店配置抽象基类"""

    @abstractmethod
    def get_spare_part_seed(self) -> List[Dict[str, Any]]:
        """获取初始化备件目录"""
        pass

    @abstractmethod
    def get_weekday_labels(self) -> List[str]:
        """获取星期缩写（周一开始）"""
        pass

    @abstractmethod
    def get_month_labels(self) -> List[str]:
        """获取月份缩写（一月开始）"""
        pass


class BengkelConfig(BusinessConfig):
    """汽车修理厂（bengkel）配置"""

    def get_spare_part_seed(self) -> List[Dict[str, Any]]:
        return [
            {"name": "Oli Mesin 1L", "category": "Oli", "purchase_price": 45000,
             "sale_price": 60000, "stock": 40, "min_stock": 10},
            {"name": "Filter Oli", "category": "Filter", "purchase_price": 25000,
             "sale_price": 35000, "stock": 20, "min_stock": 5},
            {"name": "Filter Udara", "category": "Filter", "purchase_price": 40000,
             "sale_price": 55000, "stock": 15, "min_stock": 5},
            {"name": "Kampas Rem Depan", "category": "Rem", "purchase_price": 120000,
             "sale_price": 165000, "stock": 10, "min_stock": 4},
            {"name": "Busi", "category": "Pengapian", "purchase_price": 20000,
             "sale_price": 30000, "stock": 30, "min_stock": 8},
            {"name": "Aki 45Ah", "category": "Kelistrikan", "purchase_price": 650000,
             "sale_price": 800000, "stock": 4, "min_stock": 2},
        ]

    def get_weekday_labels(self) -> List[str]:
        return ["Sen", "Sel", "Rab", "Kam", "Jum", "Sab", "Min"]

    def get_month_labels(self) -> List[str]:
        return ["Jan", "Feb", "Mar", "Apr", "Mei", "Jun",
                "Jul", "Agu", "Sep", "Okt", "Nov", "Des"]


# 全局业务配置实例（可以在入口处替换）
business_config: BusinessConfig = BengkelConfig()
