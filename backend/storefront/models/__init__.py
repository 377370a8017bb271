from .catalog import Product
from .orders import Order, OrderStatus, PaymentMethod
from .promotions import DiscountCode, DiscountUsage, DiscountType
from .gift_cards import GiftCard, GiftCardTransaction, GiftCardStatus, GiftCardTransactionType
from .auth import AdminUser, RateLimitRecord, RevokedToken
from .security import AuditLog

__all__ = [
    'Product',
    'Order', 'OrderStatus', 'PaymentMethod',
    'DiscountCode', 'DiscountUsage', 'DiscountType',
    'GiftCard', 'GiftCardTransaction', 'GiftCardStatus', 'GiftCardTransactionType',
    'AdminUser', 'RateLimitRecord', 'RevokedToken',
    'AuditLog',
]
