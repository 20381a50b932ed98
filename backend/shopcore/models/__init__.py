from .catalog import Product, ProductVariant
from .customers import Profile
from .settings import StoreSettings
from .orders import Order, OrderItem, ControlSequence
from .inventory import StockMovement
from .credit import StoreCreditHistory
from .finance import FinanceAccount, FinanceCategory, FinanceTransaction, CashClosing
from .payments import PaymentConfirmation
from .returns import Return, ReturnLine
from .webhooks import WebhookDelivery

__all__ = [
    'Product', 'ProductVariant',
    'Profile',
    'StoreSettings',
    'Order', 'OrderItem', 'ControlSequence',
    'StockMovement',
    'StoreCreditHistory',
    'FinanceAccount', 'FinanceCategory', 'FinanceTransaction', 'CashClosing',
    'PaymentConfirmation',
    'Return', 'ReturnLine',
    'WebhookDelivery',
]
