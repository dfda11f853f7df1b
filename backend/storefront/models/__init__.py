from .orders import Order, OrderItem, OrderTimelineEntry

__all__ = [
    'Order', 'OrderItem', 'OrderTimelineEntry',
]
