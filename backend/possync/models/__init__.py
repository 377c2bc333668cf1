from .inventory import Product, StockChange
from .sync import SyncRecord
from .settings import SystemSetting

__all__ = [
    'Product', 'StockChange',
    'SyncRecord',
    'SystemSetting',
]
