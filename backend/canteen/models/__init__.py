from .tenancy import Theater
from .auth import Role, User, SessionToken
from .catalog import Category, KioskType, ProductType, Product, Combo, ComboItem
from .stock import MonthlyStock, StockEntry
from .orders import Order, OrderLine, OrderSequence
from .printing import PrintJob, PrinterSetup
from .settings import SystemSetting

__all__ = [
    'Theater',
    'Role', 'User', 'SessionToken',
    'Category', 'KioskType', 'ProductType', 'Product', 'Combo', 'ComboItem',
    'MonthlyStock', 'StockEntry',
    'Order', 'OrderLine', 'OrderSequence',
    'PrintJob', 'PrinterSetup',
    'SystemSetting',
]
