from .tenancy import Store
from .users import User
from .inventory import Product, StockMovement
from .sales import PaymentMethod, Sale, SaleLine
from .shifts import Shift, Expense
from .documents import DocumentSequence, LedgerEvent, ReconciliationTask

__all__ = [
    'Store', 'User',
    'Product', 'StockMovement',
    'PaymentMethod', 'Sale', 'SaleLine',
    'Shift', 'Expense',
    'DocumentSequence', 'LedgerEvent', 'ReconciliationTask',
]
