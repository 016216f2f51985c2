# Package init for eventpass.models
from .billing import PaymentLog as PaymentLog
from .billing import PaymentTransaction as PaymentTransaction
from .event import Event as Event
from .event import EventTicketType as EventTicketType
from .logging import AppErrorLog as AppErrorLog
from .order import Order as Order
from .order import OrderItem as OrderItem
from .subscription import PlanDefinition as PlanDefinition
from .subscription import Subscription as Subscription
from .user import Base as Base  # explicit re-export
from .user import User as User
