from .accounts import User, UserTombstone
from .inventory import Product, InventoryHistoryEntry
from .coupons import Coupon, CouponUsage
from .orders import Order, OrderItem
from .carts import Cart, CartItem, CartActivity

__all__ = [
    'User', 'UserTombstone',
    'Product', 'InventoryHistoryEntry',
    'Coupon', 'CouponUsage',
    'Order', 'OrderItem',
    'Cart', 'CartItem', 'CartActivity',
]
