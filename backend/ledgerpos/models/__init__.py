from .inventory import InventoryItem
from .bills import BillRecord, BillLine, BillEdit
from .movements import DailyMovementLog, MovementEvent
from .documents import DocumentSequence
from .imports import StockImportBatch

__all__ = [
    'InventoryItem',
    'BillRecord', 'BillLine', 'BillEdit',
    'DailyMovementLog', 'MovementEvent',
    'DocumentSequence',
    'StockImportBatch',
]
