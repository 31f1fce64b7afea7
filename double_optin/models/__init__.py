from double_optin.models.account import Account, AccountCreate, AccountRead
from double_optin.models.order import Order, OrderCreate, OrderRead, OrderStatus

__all__ = [
    "Account",
    "AccountCreate",
    "AccountRead",
    "Order",
    "OrderCreate",
    "OrderRead",
    "OrderStatus",
]
