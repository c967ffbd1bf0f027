from .tenancy import Customer, ControlPoint
from .auth import User, SessionToken
from .orders import Order, SupplierOrder, SupplierOrderLine
from .chips import RfidChip, RfidChipStatusHistory, ChipStatus
from .security import SecurityEvent

__all__ = [
    'Customer', 'ControlPoint',
    'User', 'SessionToken',
    'Order', 'SupplierOrder', 'SupplierOrderLine',
    'RfidChip', 'RfidChipStatusHistory', 'ChipStatus',
    'SecurityEvent',
]
