from .directory import Address, Profile, User, Store
from .catalog import Product
from .inventory import InventoryRecord, StockAllocation, inventory_products
from .orders import Order, OrderItem, OrderSequence
from .payments import Payment
from .deliveries import Delivery

__all__ = [
    'Address', 'Profile', 'User', 'Store',
    'Product',
    'InventoryRecord', 'StockAllocation', 'inventory_products',
    'Order', 'OrderItem', 'OrderSequence',
    'Payment',
    'Delivery',
]
